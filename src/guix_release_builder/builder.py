"""Thin wrapper around the Guix deterministic build toolchain.

The toolchain lives inside the upstream source checkout
(``contrib/guix/guix-build``); this module prepares the checkout and the
shared caches, runs the toolchain for one tag and reports where its outputs
landed. Everything heavy happens in the external process.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Protocol, Sequence

from .errors import BuildFailure, ConfigError
from .models import BuildResult, CleanReport, JobConfig, Tag
from .settings import TRACE
from .storage import locked_file

if TYPE_CHECKING:
    from .config import BuilderConfig

logger = logging.getLogger(__name__)

SOURCE_REPO_URL = "https://github.com/bitcoin/bitcoin"
GUIX_SIGS_URL = "https://github.com/bitcoin-core/guix.sigs.git"
DETACHED_SIGS_URL = "https://github.com/bitcoin-core/bitcoin-detached-sigs"

# Workspace locks, always taken in this order when nested.
SOURCE_LOCK = "source"
DETACHED_SIGS_LOCK = "detached-sigs"
GUIX_SIGS_LOCK = "guix-sigs"


class CommandError(RuntimeError):
    def __init__(self, args: Sequence[str], returncode: int, output: str = "") -> None:
        super().__init__(f"Command failed ({returncode}): {' '.join(args)}")
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output


def run_command(
    args: Sequence[str],
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
) -> str:
    """Run a short command, returning stdout. Raises CommandError on non-zero exit."""
    logger.debug("Running %s in %s", " ".join(args), cwd)
    merged_env = {**os.environ, **env} if env else None
    try:
        result = subprocess.run(
            list(args),
            cwd=cwd,
            env=merged_env,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(args, -1, str(exc)) from exc
    if result.returncode != 0:
        logger.error("%s exited %d: %s", args[0], result.returncode, result.stderr.strip())
        raise CommandError(args, result.returncode, result.stderr)
    return result.stdout


def stream_command(
    args: Sequence[str],
    *,
    cwd: Path,
    env: dict[str, str],
    log_path: Path,
) -> int:
    """Run a long command to completion, teeing its combined output into *log_path*.

    The child is never signalled from here; callers that want to stop early
    must wait for it to finish.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Running %s (log: %s)", " ".join(args), log_path)
    with log_path.open("a", encoding="utf-8") as log_handle:
        try:
            process = subprocess.Popen(
                list(args),
                cwd=cwd,
                env={**os.environ, **env},
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            log_handle.write(f"failed to start {args[0]}: {exc}\n")
            return 127
        assert process.stdout is not None
        for line in process.stdout:
            log_handle.write(line)
            logger.log(TRACE, "%s", line.rstrip())
        return process.wait()


@dataclass(frozen=True)
class BuildWorkspace:
    """Directory layout shared with the toolchain's own caches.

    The three checkouts are shared by every pipeline. A run that moves or
    reads a checkout holds that checkout's workspace lock (see ``exclusive``)
    for as long as it depends on what is checked out.
    """

    root: Path
    source_url: str = SOURCE_REPO_URL
    detached_sigs_url: str = DETACHED_SIGS_URL

    @classmethod
    def from_config(cls, config: BuilderConfig) -> BuildWorkspace:
        return cls(
            Path(config.guix_build_dir).expanduser(),
            source_url=f"https://github.com/{config.source_repo_owner}/{config.source_repo_name}",
            detached_sigs_url=f"https://github.com/{config.detached_repo_owner}/{config.detached_repo_name}",
        )

    @contextmanager
    def exclusive(self, name: str) -> Iterator[None]:
        """Hold the workspace lock *name* across threads and processes. Not re-entrant."""
        with locked_file(self.root / ".locks" / name):
            yield

    @property
    def source_dir(self) -> Path:
        return self.root / "bitcoin"

    @property
    def guix_sigs_dir(self) -> Path:
        return self.root / "guix.sigs"

    @property
    def detached_sigs_dir(self) -> Path:
        return self.root / "bitcoin-detached-sigs"

    @property
    def sdk_dir(self) -> Path:
        return self.root / "macos-sdks"

    @property
    def sources_cache(self) -> Path:
        return self.root / "depends-sources-cache"

    @property
    def base_cache(self) -> Path:
        return self.root / "depends-base-cache"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def build_dir(self, tag: Tag) -> Path:
        return self.source_dir / f"guix-build-{tag.version}"

    def output_dir(self, tag: Tag) -> Path:
        return self.build_dir(tag) / "output"

    def toolchain_env(self) -> dict[str, str]:
        return {
            "SOURCES_PATH": str(self.sources_cache),
            "BASE_CACHE": str(self.base_cache),
            "SDK_PATH": str(self.sdk_dir),
        }

    def is_initialized(self) -> bool:
        return all(
            (path / ".git").exists()
            for path in (self.source_dir, self.guix_sigs_dir, self.detached_sigs_dir)
        )

    def initialize(self, fork_url: str, *, runner: Callable[..., str] = run_command) -> None:
        """Create cache directories and clone any missing repositories."""
        for directory in (self.root, self.sdk_dir, self.sources_cache, self.base_cache, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

        if not self.source_dir.exists():
            logger.info("Cloning source repository into %s", self.source_dir)
            runner(["git", "clone", self.source_url, self.source_dir.name], cwd=self.root)
        if not self.detached_sigs_dir.exists():
            logger.info("Cloning detached signatures repository into %s", self.detached_sigs_dir)
            runner(["git", "clone", self.detached_sigs_url, self.detached_sigs_dir.name], cwd=self.root)
        if not self.guix_sigs_dir.exists():
            logger.info("Cloning guix.sigs repository into %s", self.guix_sigs_dir)
            runner(
                ["git", "clone", "--origin", "upstream", GUIX_SIGS_URL, self.guix_sigs_dir.name],
                cwd=self.root,
            )
            runner(["git", "remote", "add", "origin", fork_url], cwd=self.guix_sigs_dir)
            logger.info("Set guix.sigs origin remote to %s", fork_url)

    def refresh(self, *, runner: Callable[..., str] = run_command) -> None:
        """Bring the signature repositories up to date with upstream."""
        logger.info("Refreshing guix.sigs and detached signature repositories")
        with self.exclusive(DETACHED_SIGS_LOCK):
            runner(["git", "checkout", "master"], cwd=self.detached_sigs_dir)
            runner(["git", "pull", "origin", "master"], cwd=self.detached_sigs_dir)
        with self.exclusive(GUIX_SIGS_LOCK):
            runner(["git", "checkout", "main"], cwd=self.guix_sigs_dir)
            runner(["git", "pull", "upstream", "main"], cwd=self.guix_sigs_dir)

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise ConfigError(
                f"build workspace {self.root} is not initialized. Run `guix-release-builder setup` first."
            )


class BuildExecutor(Protocol):
    def build(self, tag: Tag, targets: Sequence[str], job_config: JobConfig) -> BuildResult: ...

    def output_dir(self, tag: Tag) -> Path: ...


def job_environment(targets: Sequence[str], job_config: JobConfig) -> dict[str, str]:
    """Environment that parameterizes parallelism and hosts of the toolchain run."""
    env: dict[str, str] = {}
    if targets:
        env["HOSTS"] = " ".join(targets)
    if job_config.multi_package:
        env["JOBS"] = "1"
        env["ADDITIONAL_GUIX_COMMON_FLAGS"] = f"--max-jobs={job_config.max_jobs}"
    return env


class GuixBuildExecutor:
    """Runs ``contrib/guix/guix-build`` for one tag inside the shared workspace."""

    def __init__(
        self,
        workspace: BuildWorkspace,
        *,
        runner: Callable[..., str] = run_command,
        streamer: Callable[..., int] = stream_command,
    ) -> None:
        self.workspace = workspace
        self._run = runner
        self._stream = streamer

    def output_dir(self, tag: Tag) -> Path:
        return self.workspace.output_dir(tag)

    def checkout(self, ref: str) -> None:
        logger.info("Checking out %s", ref)
        self._run(["git", "fetch", "--tags", "origin"], cwd=self.workspace.source_dir)
        self._run(["git", "checkout", "--force", ref], cwd=self.workspace.source_dir)

    def _invoke_toolchain(self, label: str, targets: Sequence[str], job_config: JobConfig) -> tuple[int, Path]:
        log_path = self.workspace.logs_dir / f"{label}-build.log"
        env = {**self.workspace.toolchain_env(), **job_environment(targets, job_config)}
        exit_code = self._stream(
            [str(self.workspace.source_dir / "contrib" / "guix" / "guix-build")],
            cwd=self.workspace.source_dir,
            env=env,
            log_path=log_path,
        )
        return exit_code, log_path

    def build(self, tag: Tag, targets: Sequence[str], job_config: JobConfig) -> BuildResult:
        """Build *tag*. Raises BuildFailure on any non-zero exit, including git failures."""
        self.workspace.require_initialized()
        with self.workspace.exclusive(SOURCE_LOCK):
            try:
                self.checkout(tag.name)
                self.workspace.refresh(runner=self._run)
            except CommandError as exc:
                raise BuildFailure(
                    f"could not prepare sources for {tag.name}: {exc}", exit_code=exc.returncode
                ) from exc
            exit_code, log_path = self._invoke_toolchain(tag.name, targets, job_config)
        if exit_code != 0:
            raise BuildFailure(
                f"guix-build for {tag.name} exited with {exit_code}; see {log_path}",
                exit_code=exit_code,
                log_path=log_path,
            )
        output_dir = self.workspace.output_dir(tag)
        logger.info("Build outputs for %s in %s", tag.name, output_dir)
        return BuildResult(success=True, output_dir=output_dir, log_path=log_path)

    def warmup(self, targets: Sequence[str], job_config: JobConfig) -> Path:
        """Build current master so the depends caches are populated ahead of a release."""
        self.workspace.require_initialized()
        with self.workspace.exclusive(SOURCE_LOCK):
            try:
                self.checkout("origin/master")
            except CommandError as exc:
                raise BuildFailure(f"could not check out master: {exc}", exit_code=exc.returncode) from exc
            exit_code, log_path = self._invoke_toolchain("master", targets, job_config)
        if exit_code != 0:
            raise BuildFailure(f"warmup build exited with {exit_code}; see {log_path}", exit_code=exit_code, log_path=log_path)
        return log_path

    def clean(self) -> CleanReport:
        """Remove ``guix-build-*`` scratch directories; caches are left intact."""
        report = CleanReport()
        source_dir = self.workspace.source_dir
        if not source_dir.is_dir():
            return report
        with self.workspace.exclusive(SOURCE_LOCK):
            for path in sorted(source_dir.glob("guix-build-*")):
                if not path.is_dir():
                    continue
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    logger.warning("Could not remove %s: %s", path, exc)
                    report.failed[path] = str(exc)
                else:
                    logger.info("Removed %s", path)
                    report.removed.append(path)
        return report
