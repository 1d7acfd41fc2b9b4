"""Durable tag registry and per-tag lock manager.

Each tag owns two small JSON documents under the registry root::

    entries/<tag>.json   TagRegistryEntry (stage, completion, attempts)
    locks/<tag>.json     LockRecord (owner, pid, heartbeat), present while held

Every document is replaced atomically and every read-modify-write runs under
an ``fcntl`` lock on a per-tag sidecar, so concurrent threads and processes
sharing a state directory never lose updates. Locks outlive the process that
took them; a lock whose owner pid is gone (same host) or whose heartbeat is
older than ``stale_after`` seconds may be reclaimed.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import InvalidTransitionError, LockContentionError
from .models import LockRecord, PipelineStage, TagRegistryEntry, can_transition
from .storage import atomic_write_text, locked_file, safe_file_stem, safe_read_text
from .version import sort_tags

logger = logging.getLogger(__name__)


def new_owner_id() -> str:
    """Identity of one pipeline run: unique per thread-level run, traceable to host and pid."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TagRegistry:
    """Persisted tag → stage mapping plus the cross-process lock arbiter."""

    def __init__(self, root: Path, *, stale_after: float = 300.0) -> None:
        self.root = root
        self.stale_after = stale_after
        self.entries_dir = self.root / "entries"
        self.locks_dir = self.root / "locks"
        self.entries_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _entry_path(self, tag: str) -> Path:
        return self.entries_dir / f"{safe_file_stem(tag)}.json"

    def _lock_path(self, tag: str) -> Path:
        return self.locks_dir / f"{safe_file_stem(tag)}.json"

    def _seed_path(self) -> Path:
        return self.root / "baseline.json"

    @contextmanager
    def _guard(self, tag: str) -> Iterator[None]:
        with locked_file(self.root / "guards" / f"{safe_file_stem(tag)}"):
            yield

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _read_entry(self, tag: str) -> TagRegistryEntry | None:
        path = self._entry_path(tag)
        if not path.is_file():
            return None
        text = safe_read_text(path, f"registry entry for {tag}")
        try:
            return TagRegistryEntry.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"registry entry at {path} failed validation: {exc}") from exc

    def _write_entry(self, entry: TagRegistryEntry) -> None:
        entry.updated_at = datetime.now(UTC)
        atomic_write_text(self._entry_path(entry.tag), to_canonical_json(entry))

    def get(self, tag: str) -> TagRegistryEntry | None:
        with self._guard(tag):
            return self._read_entry(tag)

    def observe(self, tag: str, *, baseline: bool = False) -> bool:
        """Create the entry for a newly seen tag.

        Returns:
            True if the tag was not known before.
        """
        with self._guard(tag):
            if self._read_entry(tag) is not None:
                return False
            entry = TagRegistryEntry(tag=tag, baseline=baseline, completed=baseline)
            self._write_entry(entry)
        if baseline:
            logger.debug("Recorded historical tag %s as baseline", tag)
        else:
            logger.info("Observed new tag %s", tag)
        return True

    def known_tags(self) -> set[str]:
        tags: set[str] = set()
        for path in self.entries_dir.glob("*.json"):
            entry = self.get(path.stem)
            if entry is not None:
                tags.add(entry.tag)
        return tags

    def entries(self) -> list[TagRegistryEntry]:
        found: dict[str, TagRegistryEntry] = {}
        for path in self.entries_dir.glob("*.json"):
            entry = self.get(path.stem)
            if entry is not None:
                found[entry.tag] = entry
        return [found[tag] for tag in sort_tags(found)]

    def is_seeded(self) -> bool:
        """True once the watcher has recorded the tags published before it first ran."""
        return self._seed_path().is_file()

    def mark_seeded(self, tags: list[str]) -> None:
        payload = {"seeded_at": datetime.now(UTC), "tags": sorted(tags)}
        atomic_write_text(self._seed_path(), to_canonical_json(payload))
        logger.info("Baseline recorded with %d published tag(s)", len(tags))

    def record_stage(
        self,
        tag: str,
        stage: PipelineStage,
        *,
        error: str | None = None,
        attempts: dict[str, int] | None = None,
        output_dir: Path | None = None,
    ) -> TagRegistryEntry:
        """Persist a stage transition after validating it against the transition table.

        Raises:
            KeyError: If the tag was never observed.
            InvalidTransitionError: If the move is not allowed.
        """
        with self._guard(tag):
            entry = self._read_entry(tag)
            if entry is None:
                raise KeyError(f"tag {tag} is not in the registry")
            if not can_transition(entry.stage, stage):
                raise InvalidTransitionError(
                    f"Illegal stage transition for {tag}: {entry.stage.value} -> {stage.value}"
                )
            if stage == PipelineStage.FAILED:
                entry.failed_stage = entry.stage
            if stage == PipelineStage.AWAITING_SIGNATURES:
                if entry.awaiting_since is None:
                    entry.awaiting_since = datetime.now(UTC)
            elif stage != PipelineStage.FAILED:
                entry.awaiting_since = None
            entry.stage = stage
            entry.completed = stage == PipelineStage.DONE
            entry.error = error
            if attempts is not None:
                entry.attempts = dict(attempts)
            if output_dir is not None:
                entry.output_dir = str(output_dir)
            self._write_entry(entry)
        logger.debug("Registry: %s -> %s", tag, stage.value)
        return entry

    def reset(self, tag: str, stage: PipelineStage, *, manual: bool = False) -> TagRegistryEntry:
        """Manually move a tag back to *stage*, clearing failure and attempt state.

        This is an operator action, outside the forward-only transition table.
        With *manual* the entry is marked as operator-driven and the watcher
        leaves it alone from then on.
        """
        with self._guard(tag):
            entry = self._read_entry(tag)
            if entry is None:
                entry = TagRegistryEntry(tag=tag)
            entry.stage = stage
            entry.completed = stage == PipelineStage.DONE
            entry.baseline = False
            entry.failed_stage = None
            entry.error = None
            entry.attempts = {}
            entry.awaiting_since = None
            entry.manual = entry.manual or manual
            self._write_entry(entry)
        logger.info("Registry: %s reset to %s", tag, stage.value)
        return entry

    def load_incomplete(self) -> list[TagRegistryEntry]:
        """Entries whose pipeline has neither finished nor failed, oldest release first."""
        return [entry for entry in self.entries() if entry.is_active]

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _read_lock(self, tag: str) -> LockRecord | None:
        path = self._lock_path(tag)
        if not path.is_file():
            return None
        try:
            return LockRecord.model_validate_json(safe_read_text(path, f"lock for {tag}"))
        except (ValueError, ValidationError) as exc:
            # An unreadable lock cannot name a live owner.
            logger.warning("Discarding unreadable lock record %s: %s", path, exc)
            return None

    def is_stale(self, record: LockRecord, *, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        if record.hostname == socket.gethostname() and not pid_alive(record.pid):
            return True
        return current - record.heartbeat_at > timedelta(seconds=self.stale_after)

    def try_acquire(self, tag: str, owner: str) -> bool:
        """Take the exclusive right to run *tag*'s pipeline.

        Returns:
            True if *owner* now holds the lock (re-acquiring one's own lock succeeds).
        """
        with self._guard(tag):
            current = self._read_lock(tag)
            if current is not None and current.owner != owner:
                if not self.is_stale(current):
                    logger.debug("Lock for %s held by %s", tag, current.owner)
                    return False
                logger.warning(
                    "Reclaiming stale lock for %s from %s (last heartbeat %s)",
                    tag,
                    current.owner,
                    current.heartbeat_at.isoformat(),
                )
            now = datetime.now(UTC)
            record = LockRecord(
                tag=tag,
                owner=owner,
                hostname=socket.gethostname(),
                pid=os.getpid(),
                acquired_at=current.acquired_at if current is not None and current.owner == owner else now,
                heartbeat_at=now,
            )
            atomic_write_text(self._lock_path(tag), to_canonical_json(record))
        logger.debug("Lock for %s acquired by %s", tag, owner)
        return True

    def acquire(self, tag: str, owner: str) -> None:
        """Like ``try_acquire`` but raises LockContentionError when the tag is held."""
        if not self.try_acquire(tag, owner):
            raise LockContentionError(tag, self.lock_owner(tag))

    def release(self, tag: str, owner: str) -> bool:
        """Drop the lock if *owner* holds it. Returns True if a lock was removed."""
        with self._guard(tag):
            current = self._read_lock(tag)
            if current is None:
                return False
            if current.owner != owner:
                logger.warning("Refusing to release lock for %s held by %s (requested by %s)", tag, current.owner, owner)
                return False
            self._lock_path(tag).unlink(missing_ok=True)
        logger.debug("Lock for %s released by %s", tag, owner)
        return True

    def heartbeat(self, tag: str, owner: str) -> bool:
        """Refresh the heartbeat of a held lock. Returns False if *owner* lost it."""
        with self._guard(tag):
            current = self._read_lock(tag)
            if current is None or current.owner != owner:
                return False
            current.heartbeat_at = datetime.now(UTC)
            atomic_write_text(self._lock_path(tag), to_canonical_json(current))
        return True

    def lock_owner(self, tag: str) -> str | None:
        with self._guard(tag):
            record = self._read_lock(tag)
        return record.owner if record is not None else None

    def is_locked(self, tag: str) -> bool:
        """True if a live (non-stale) owner holds the tag."""
        with self._guard(tag):
            record = self._read_lock(tag)
            return record is not None and not self.is_stale(record)

    @contextmanager
    def holding(self, tag: str, owner: str, *, heartbeat_interval: float) -> Iterator[None]:
        """Acquire *tag*, refresh the heartbeat in the background, release on exit.

        Raises:
            LockContentionError: If another live owner holds the tag.
        """
        self.acquire(tag, owner)
        stop = threading.Event()

        def _beat() -> None:
            while not stop.wait(heartbeat_interval):
                if not self.heartbeat(tag, owner):
                    logger.error("Lost lock for %s (owner %s)", tag, owner)
                    return

        beater = threading.Thread(target=_beat, name=f"heartbeat-{tag}", daemon=True)
        beater.start()
        try:
            yield
        finally:
            stop.set()
            beater.join()
            self.release(tag, owner)
