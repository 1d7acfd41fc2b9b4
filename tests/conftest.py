from __future__ import annotations

import threading
from pathlib import Path
from typing import Sequence

import pytest

from guix_release_builder.config import BuilderConfig, RetryPolicy
from guix_release_builder.context import BuildContext
from guix_release_builder.errors import BuildFailure, MissingSignatureError, SigningError
from guix_release_builder.models import (
    AttestationResult,
    BuildResult,
    CodesignResult,
    JobConfig,
    Tag,
)
from guix_release_builder.settings import RuntimeSettings
from guix_release_builder.tag_registry import TagRegistry


class FakeTagSource:
    def __init__(self, names: Sequence[str] = ()) -> None:
        self.names = list(names)
        self.errors: list[Exception] = []
        self.calls = 0

    def list_tags(self) -> list[Tag]:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return [Tag(name) for name in self.names]

    def tag_exists(self, name: str) -> bool:
        return name in self.names


class FakeBuildExecutor:
    def __init__(self, root: Path, *, failures: int = 0) -> None:
        self.root = root
        self.failures = failures
        self.calls: list[str] = []

    def output_dir(self, tag: Tag) -> Path:
        return self.root / f"guix-build-{tag.version}" / "output"

    def build(self, tag: Tag, targets: Sequence[str], job_config: JobConfig) -> BuildResult:
        self.calls.append(tag.name)
        if self.failures > 0:
            self.failures -= 1
            raise BuildFailure(f"guix-build for {tag.name} exited with 1", exit_code=1)
        output = self.output_dir(tag)
        (output / "x86_64-linux-gnu").mkdir(parents=True, exist_ok=True)
        (output / "x86_64-linux-gnu" / f"bitcoin-{tag.version}.tar.gz").write_text("binary", encoding="utf-8")
        return BuildResult(success=True, output_dir=output)


class FakeSigningGateway:
    def __init__(self, *, ready: bool = True) -> None:
        self.ready = ready
        self.attest_error: SigningError | None = None
        self.codesign_errors: list[SigningError] = []
        self.attest_calls: list[str] = []
        self.await_calls: list[str] = []
        self.codesign_calls: list[str] = []
        self.polled = threading.Event()

    def attest(self, tag: Tag, output_dir: Path, signer: str) -> AttestationResult:
        self.attest_calls.append(tag.name)
        if self.attest_error is not None:
            raise self.attest_error
        sums = output_dir / "noncodesigned.SHA256SUMS"
        return AttestationResult(sums, sums.with_suffix(".asc"), {})

    def await_detached_signatures(self, tag: Tag, output_dir: Path, required_signers: Sequence[str]) -> bool:
        self.await_calls.append(tag.name)
        self.polled.set()
        return self.ready

    def codesign(self, tag: Tag, output_dir: Path) -> CodesignResult:
        self.codesign_calls.append(tag.name)
        if not self.ready:
            raise MissingSignatureError(f"detached signatures for {tag.name} missing")
        if self.codesign_errors:
            raise self.codesign_errors.pop(0)
        return CodesignResult(output_dir=output_dir)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        config_dir=str(tmp_path / "config"),
        state_dir=str(tmp_path / "state"),
        log_level="debug",
        lock_stale_seconds=60,
        heartbeat_seconds=1,
    )


@pytest.fixture
def config(tmp_path: Path) -> BuilderConfig:
    return BuilderConfig(
        signer_name="alice",
        gpg_key_id="0xDEADBEEF",
        guix_sigs_fork_url="https://github.com/alice/guix.sigs",
        guix_build_dir=tmp_path / "builds",
        poll_interval_seconds=0.01,
        retry=RetryPolicy(
            build_max_attempts=3,
            codesign_max_attempts=2,
            signature_poll_initial_seconds=0.01,
            signature_poll_max_seconds=0.02,
            signature_timeout_seconds=30.0,
            network_backoff_max_seconds=0.05,
        ),
    )


@pytest.fixture
def registry(settings: RuntimeSettings) -> TagRegistry:
    return TagRegistry(settings.registry_path, stale_after=float(settings.lock_stale_seconds))


@pytest.fixture
def tag_source() -> FakeTagSource:
    return FakeTagSource()


@pytest.fixture
def executor(tmp_path: Path) -> FakeBuildExecutor:
    return FakeBuildExecutor(tmp_path / "builds" / "bitcoin")


@pytest.fixture
def gateway() -> FakeSigningGateway:
    return FakeSigningGateway()


@pytest.fixture
def context(
    settings: RuntimeSettings,
    config: BuilderConfig,
    registry: TagRegistry,
    tag_source: FakeTagSource,
    executor: FakeBuildExecutor,
    gateway: FakeSigningGateway,
) -> BuildContext:
    return BuildContext(
        settings=settings,
        config=config,
        registry=registry,
        tag_source=tag_source,
        executor=executor,
        gateway=gateway,
        job_config=JobConfig(),
    )
