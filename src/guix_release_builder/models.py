from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from .version import is_release_tag, strip_prefix


class PipelineStage(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    BUILT = "built"
    ATTESTING = "attesting"
    ATTESTED = "attested"
    AWAITING_SIGNATURES = "awaiting_signatures"
    CODESIGNING = "codesigning"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({PipelineStage.DONE, PipelineStage.FAILED})

# Forward-only moves. Re-entering the current stage is always permitted and
# handled by ``can_transition``.
STAGE_TRANSITIONS: dict[PipelineStage, frozenset[PipelineStage]] = {
    PipelineStage.PENDING: frozenset({PipelineStage.BUILDING}),
    PipelineStage.BUILDING: frozenset({PipelineStage.BUILT, PipelineStage.PENDING, PipelineStage.FAILED}),
    PipelineStage.BUILT: frozenset({PipelineStage.ATTESTING}),
    PipelineStage.ATTESTING: frozenset({PipelineStage.ATTESTED, PipelineStage.FAILED}),
    PipelineStage.ATTESTED: frozenset({PipelineStage.AWAITING_SIGNATURES}),
    PipelineStage.AWAITING_SIGNATURES: frozenset({PipelineStage.CODESIGNING, PipelineStage.FAILED}),
    PipelineStage.CODESIGNING: frozenset(
        {PipelineStage.DONE, PipelineStage.AWAITING_SIGNATURES, PipelineStage.FAILED}
    ),
    PipelineStage.DONE: frozenset(),
    PipelineStage.FAILED: frozenset(),
}


def can_transition(current: PipelineStage, new: PipelineStage) -> bool:
    if current == new:
        return not current.is_terminal
    return new in STAGE_TRANSITIONS[current]


@dataclass(frozen=True)
class Tag:
    """One release candidate of the upstream project."""

    name: str
    discovered_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not is_release_tag(self.name):
            raise ValueError(f"not a release tag: {self.name!r}")

    @property
    def version(self) -> str:
        """Tag without its ``v`` prefix, as used by the toolchain for directory names."""
        return strip_prefix(self.name)

    def __str__(self) -> str:
        return self.name


class TagRegistryEntry(BaseModel):
    """Durable record of one tag's progress through the release pipeline."""

    tag: str
    stage: PipelineStage = PipelineStage.PENDING
    completed: bool = False
    baseline: bool = False
    manual: bool = False
    failed_stage: PipelineStage | None = None
    attempts: dict[str, int] = Field(default_factory=dict)
    output_dir: str | None = None
    error: str | None = None
    awaiting_since: datetime | None = None
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("tag")
    @classmethod
    def _validate_tag(cls, value: str) -> str:
        if not is_release_tag(value):
            raise ValueError(f"not a release tag: {value!r}")
        return value

    @property
    def is_active(self) -> bool:
        return not self.completed and not self.stage.is_terminal


class LockRecord(BaseModel):
    """Persisted ownership of a tag's pipeline."""

    tag: str
    owner: str
    hostname: str
    pid: int
    acquired_at: datetime
    heartbeat_at: datetime


@dataclass
class PipelineRun:
    """One attempt to carry a tag through the pipeline stages."""

    tag: Tag
    stage: PipelineStage = PipelineStage.PENDING
    attempts: dict[str, int] = field(default_factory=dict)
    output_dir: Path | None = None
    error: str | None = None
    suspended: bool = False

    @property
    def succeeded(self) -> bool:
        return self.stage == PipelineStage.DONE


@dataclass(frozen=True)
class JobConfig:
    """Parameters passed through to the external build invocation."""

    multi_package: bool = False
    max_jobs: int = 8


@dataclass(frozen=True)
class BuildResult:
    success: bool
    output_dir: Path
    log_path: Path | None = None


@dataclass(frozen=True)
class AttestationResult:
    sums_path: Path
    signature_path: Path
    digests: dict[str, str]
    skipped: bool = False


@dataclass(frozen=True)
class CodesignResult:
    output_dir: Path
    attestation: AttestationResult | None = None


@dataclass
class CleanReport:
    removed: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed
