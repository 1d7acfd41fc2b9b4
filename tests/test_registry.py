import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from guix_release_builder import tag_registry as tag_registry_module
from guix_release_builder.canonical import to_canonical_json
from guix_release_builder.errors import InvalidTransitionError, LockContentionError
from guix_release_builder.models import LockRecord, PipelineStage
from guix_release_builder.tag_registry import TagRegistry


def test_observe_creates_entry_once(registry: TagRegistry) -> None:
    assert registry.observe("v28.0") is True
    assert registry.observe("v28.0") is False

    entry = registry.get("v28.0")
    assert entry is not None
    assert entry.stage == PipelineStage.PENDING
    assert not entry.completed


def test_entries_survive_a_new_registry_instance(tmp_path: Path) -> None:
    first = TagRegistry(tmp_path)
    first.observe("v27.1")
    first.observe("v28.0rc1")
    first.record_stage("v28.0rc1", PipelineStage.BUILDING)

    second = TagRegistry(tmp_path)
    assert second.known_tags() == {"v27.1", "v28.0rc1"}
    entry = second.get("v28.0rc1")
    assert entry is not None and entry.stage == PipelineStage.BUILDING


def test_entries_are_ordered_by_release(registry: TagRegistry) -> None:
    for name in ("v28.0", "v27.1", "v28.0rc2", "v28.0rc1"):
        registry.observe(name)

    assert [entry.tag for entry in registry.entries()] == ["v27.1", "v28.0rc1", "v28.0rc2", "v28.0"]


def test_record_stage_rejects_skipping_stages(registry: TagRegistry) -> None:
    registry.observe("v28.0")

    with pytest.raises(InvalidTransitionError):
        registry.record_stage("v28.0", PipelineStage.ATTESTED)


def test_failed_is_terminal_until_reset(registry: TagRegistry) -> None:
    registry.observe("v28.0")
    registry.record_stage("v28.0", PipelineStage.BUILDING)
    entry = registry.record_stage("v28.0", PipelineStage.FAILED, error="toolchain exited with 1")
    assert entry.failed_stage == PipelineStage.BUILDING

    with pytest.raises(InvalidTransitionError):
        registry.record_stage("v28.0", PipelineStage.BUILDING)

    reset = registry.reset("v28.0", PipelineStage.PENDING)
    assert reset.stage == PipelineStage.PENDING
    assert reset.failed_stage is None and reset.error is None
    registry.record_stage("v28.0", PipelineStage.BUILDING)


def test_record_stage_for_unknown_tag(registry: TagRegistry) -> None:
    with pytest.raises(KeyError):
        registry.record_stage("v28.0", PipelineStage.BUILDING)


def test_load_incomplete_skips_baseline_and_finished(registry: TagRegistry) -> None:
    registry.observe("v26.0", baseline=True)
    registry.observe("v27.0")
    registry.observe("v28.0")
    registry.record_stage("v27.0", PipelineStage.BUILDING)
    registry.record_stage("v27.0", PipelineStage.FAILED, error="boom")

    assert [entry.tag for entry in registry.load_incomplete()] == ["v28.0"]


def test_lock_is_exclusive(registry: TagRegistry) -> None:
    assert registry.try_acquire("v28.0", "owner-a")
    assert registry.try_acquire("v28.0", "owner-a")
    assert not registry.try_acquire("v28.0", "owner-b")
    assert registry.release("v28.0", "owner-b") is False
    assert registry.lock_owner("v28.0") == "owner-a"

    assert registry.release("v28.0", "owner-a") is True
    assert registry.try_acquire("v28.0", "owner-b")


def test_concurrent_acquire_has_one_winner(registry: TagRegistry) -> None:
    barrier = threading.Barrier(8)
    winners: list[str] = []
    guard = threading.Lock()

    def contend(owner: str) -> None:
        barrier.wait()
        if registry.try_acquire("v28.0", owner):
            with guard:
                winners.append(owner)

    threads = [threading.Thread(target=contend, args=(f"owner-{index}",)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert registry.lock_owner("v28.0") == winners[0]


def test_lock_of_dead_process_is_reclaimed(registry: TagRegistry, monkeypatch: pytest.MonkeyPatch) -> None:
    assert registry.try_acquire("v28.0", "crashed-run")
    monkeypatch.setattr(tag_registry_module, "pid_alive", lambda pid: False)

    assert not registry.is_locked("v28.0")
    assert registry.try_acquire("v28.0", "new-run")
    assert registry.lock_owner("v28.0") == "new-run"


def test_lock_with_old_heartbeat_is_stale(tmp_path: Path) -> None:
    registry = TagRegistry(tmp_path, stale_after=30)
    old = datetime.now(UTC) - timedelta(minutes=5)
    record = LockRecord(
        tag="v28.0",
        owner="other-host:42:abc",
        hostname="other-host",
        pid=42,
        acquired_at=old,
        heartbeat_at=old,
    )
    (tmp_path / "locks" / "v28.0.json").write_text(to_canonical_json(record), encoding="utf-8")

    assert registry.is_stale(record)
    assert registry.try_acquire("v28.0", "local-run")


def test_holding_releases_on_error(registry: TagRegistry) -> None:
    with pytest.raises(RuntimeError):
        with registry.holding("v28.0", "owner-a", heartbeat_interval=0.01):
            assert registry.is_locked("v28.0")
            raise RuntimeError("stage crashed")

    assert not registry.is_locked("v28.0")


def test_holding_rejects_second_owner(registry: TagRegistry) -> None:
    with registry.holding("v28.0", "owner-a", heartbeat_interval=0.01):
        with pytest.raises(LockContentionError):
            with registry.holding("v28.0", "owner-b", heartbeat_interval=0.01):
                pass
    assert registry.lock_owner("v28.0") is None


def test_heartbeat_refreshes_only_for_owner(registry: TagRegistry) -> None:
    registry.try_acquire("v28.0", "owner-a")

    assert registry.heartbeat("v28.0", "owner-a")
    assert not registry.heartbeat("v28.0", "owner-b")


def _walk_to_awaiting(registry: TagRegistry, tag: str) -> None:
    for stage in (
        PipelineStage.BUILDING,
        PipelineStage.BUILT,
        PipelineStage.ATTESTING,
        PipelineStage.ATTESTED,
        PipelineStage.AWAITING_SIGNATURES,
    ):
        registry.record_stage(tag, stage)


def test_awaiting_since_is_kept_across_reentry_and_cleared_on_reset(registry: TagRegistry) -> None:
    registry.observe("v28.0")
    _walk_to_awaiting(registry, "v28.0")
    entry = registry.get("v28.0")
    assert entry is not None and entry.awaiting_since is not None
    started = entry.awaiting_since

    again = registry.record_stage("v28.0", PipelineStage.AWAITING_SIGNATURES)
    assert again.awaiting_since == started

    assert registry.record_stage("v28.0", PipelineStage.CODESIGNING).awaiting_since is None
    assert registry.reset("v28.0", PipelineStage.AWAITING_SIGNATURES).awaiting_since is None


def test_manual_reset_marks_entry(registry: TagRegistry) -> None:
    registry.observe("v28.0")
    assert not registry.reset("v28.0", PipelineStage.PENDING).manual

    assert registry.reset("v28.0", PipelineStage.BUILT, manual=True).manual
    assert registry.reset("v28.0", PipelineStage.PENDING).manual


def test_seed_marker_is_independent_of_entries(tmp_path: Path) -> None:
    registry = TagRegistry(tmp_path / "registry")
    registry.observe("v28.0")
    assert not registry.is_seeded()

    registry.mark_seeded(["v27.0", "v28.0"])

    assert TagRegistry(tmp_path / "registry").is_seeded()
