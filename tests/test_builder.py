import threading
import time
from pathlib import Path
from typing import Sequence

import pytest

from guix_release_builder.builder import (
    GUIX_SIGS_URL,
    BuildWorkspace,
    CommandError,
    GuixBuildExecutor,
    job_environment,
)
from guix_release_builder.config import BuilderConfig
from guix_release_builder.errors import BuildFailure, ConfigError
from guix_release_builder.models import JobConfig, Tag


class FakeProcesses:
    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.commands: list[list[str]] = []
        self.streamed: list[tuple[list[str], dict[str, str], Path]] = []
        self.fail_on: str | None = None

    def run(self, args: Sequence[str], *, cwd: Path, env: dict[str, str] | None = None) -> str:
        self.commands.append(list(args))
        if self.fail_on is not None and self.fail_on in args:
            raise CommandError(args, 1, "error: pathspec did not match")
        return ""

    def stream(self, args: Sequence[str], *, cwd: Path, env: dict[str, str], log_path: Path) -> int:
        self.streamed.append((list(args), env, log_path))
        return self.exit_code


def _initialized(tmp_path: Path) -> BuildWorkspace:
    workspace = BuildWorkspace(tmp_path / "builds")
    for repo in (workspace.source_dir, workspace.guix_sigs_dir, workspace.detached_sigs_dir):
        (repo / ".git").mkdir(parents=True)
    return workspace


def test_job_environment_for_multi_package() -> None:
    assert job_environment([], JobConfig()) == {}
    env = job_environment(["x86_64-linux-gnu", "arm64-apple-darwin"], JobConfig(multi_package=True, max_jobs=6))
    assert env == {
        "HOSTS": "x86_64-linux-gnu arm64-apple-darwin",
        "JOBS": "1",
        "ADDITIONAL_GUIX_COMMON_FLAGS": "--max-jobs=6",
    }


def test_build_requires_initialized_workspace(tmp_path: Path) -> None:
    executor = GuixBuildExecutor(BuildWorkspace(tmp_path), runner=FakeProcesses().run)

    with pytest.raises(ConfigError):
        executor.build(Tag("v28.0"), [], JobConfig())


def test_build_runs_toolchain_with_cache_environment(tmp_path: Path) -> None:
    workspace = _initialized(tmp_path)
    processes = FakeProcesses()
    executor = GuixBuildExecutor(workspace, runner=processes.run, streamer=processes.stream)

    result = executor.build(Tag("v28.0"), [], JobConfig(multi_package=True))

    assert ["git", "checkout", "--force", "v28.0"] in processes.commands
    args, env, log_path = processes.streamed[0]
    assert args[0].endswith("contrib/guix/guix-build")
    assert env["SOURCES_PATH"] == str(workspace.sources_cache)
    assert env["BASE_CACHE"] == str(workspace.base_cache)
    assert env["SDK_PATH"] == str(workspace.sdk_dir)
    assert env["JOBS"] == "1"
    assert log_path.name == "v28.0-build.log"
    assert result.output_dir == workspace.source_dir / "guix-build-28.0" / "output"


def test_build_failure_carries_exit_code(tmp_path: Path) -> None:
    processes = FakeProcesses(exit_code=2)
    executor = GuixBuildExecutor(_initialized(tmp_path), runner=processes.run, streamer=processes.stream)

    with pytest.raises(BuildFailure) as excinfo:
        executor.build(Tag("v28.0"), [], JobConfig())

    assert excinfo.value.exit_code == 2
    assert excinfo.value.log_path is not None


def test_checkout_failure_is_build_failure(tmp_path: Path) -> None:
    processes = FakeProcesses()
    processes.fail_on = "v99.0"
    executor = GuixBuildExecutor(_initialized(tmp_path), runner=processes.run, streamer=processes.stream)

    with pytest.raises(BuildFailure):
        executor.build(Tag("v99.0"), [], JobConfig())
    assert processes.streamed == []


def test_clean_keeps_caches(tmp_path: Path) -> None:
    workspace = _initialized(tmp_path)
    (workspace.source_dir / "guix-build-27.1" / "output").mkdir(parents=True)
    (workspace.source_dir / "guix-build-28.0").mkdir()
    workspace.base_cache.mkdir(parents=True)
    (workspace.base_cache / "built.tar").write_bytes(b"cache")

    report = GuixBuildExecutor(workspace).clean()

    assert report.ok
    assert sorted(path.name for path in report.removed) == ["guix-build-27.1", "guix-build-28.0"]
    assert (workspace.base_cache / "built.tar").exists()
    assert workspace.source_dir.exists()


def test_initialize_clones_missing_repositories(tmp_path: Path) -> None:
    processes = FakeProcesses()
    workspace = BuildWorkspace(tmp_path / "builds")

    workspace.initialize("https://github.com/alice/guix.sigs", runner=processes.run)

    assert workspace.sources_cache.is_dir() and workspace.logs_dir.is_dir()
    assert ["git", "clone", "--origin", "upstream", GUIX_SIGS_URL, "guix.sigs"] in processes.commands
    assert ["git", "remote", "add", "origin", "https://github.com/alice/guix.sigs"] in processes.commands
    assert sum(1 for command in processes.commands if command[:2] == ["git", "clone"]) == 3


class CheckoutTracker(FakeProcesses):
    """Tracks which ref the shared source checkout is at while the toolchain runs."""

    def __init__(self) -> None:
        super().__init__()
        self.head: str | None = None
        self.observed: list[tuple[str | None, str | None]] = []
        self._guard = threading.Lock()

    def run(self, args: Sequence[str], *, cwd: Path, env: dict[str, str] | None = None) -> str:
        if list(args[:3]) == ["git", "checkout", "--force"]:
            self.head = args[3]
        return super().run(args, cwd=cwd, env=env)

    def stream(self, args: Sequence[str], *, cwd: Path, env: dict[str, str], log_path: Path) -> int:
        at_start = self.head
        time.sleep(0.05)
        with self._guard:
            self.observed.append((at_start, self.head))
        return 0


def test_concurrent_builds_do_not_share_the_checkout(tmp_path: Path) -> None:
    workspace = _initialized(tmp_path)
    processes = CheckoutTracker()
    executor = GuixBuildExecutor(workspace, runner=processes.run, streamer=processes.stream)
    threads = [
        threading.Thread(target=executor.build, args=(Tag(name), [], JobConfig()))
        for name in ("v27.0", "v28.0")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert len(processes.observed) == 2
    assert all(start == end for start, end in processes.observed)


def test_workspace_urls_follow_config(tmp_path: Path) -> None:
    config = BuilderConfig(
        signer_name="alice",
        gpg_key_id="0xDEADBEEF",
        guix_sigs_fork_url="https://github.com/alice/guix.sigs",
        guix_build_dir=tmp_path / "builds",
        source_repo_owner="example",
        source_repo_name="node",
        detached_repo_owner="example-signers",
        detached_repo_name="node-detached-sigs",
    )
    workspace = BuildWorkspace.from_config(config)
    processes = FakeProcesses()

    workspace.initialize(config.guix_sigs_fork_url, runner=processes.run)

    assert workspace.root == tmp_path / "builds"
    assert ["git", "clone", "https://github.com/example/node", "bitcoin"] in processes.commands
    assert [
        "git",
        "clone",
        "https://github.com/example-signers/node-detached-sigs",
        "bitcoin-detached-sigs",
    ] in processes.commands
