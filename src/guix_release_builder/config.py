"""Operator configuration persisted by ``setup`` and read once at startup."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .storage import atomic_write_text, safe_read_text

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Bounded retry and polling cadence for the pipeline and the watcher."""

    build_max_attempts: int = Field(default=3, ge=1, le=20)
    codesign_max_attempts: int = Field(default=3, ge=1, le=20)
    signature_poll_initial_seconds: float = Field(default=60.0, gt=0)
    signature_poll_max_seconds: float = Field(default=900.0, gt=0)
    signature_poll_backoff: float = Field(default=2.0, ge=1.0)
    signature_timeout_seconds: float = Field(default=7 * 24 * 3600.0, gt=0)
    network_backoff_max_seconds: float = Field(default=900.0, gt=0)

    @model_validator(mode="after")
    def _check_poll_bounds(self) -> "RetryPolicy":
        if self.signature_poll_max_seconds < self.signature_poll_initial_seconds:
            raise ValueError("signature_poll_max_seconds must be >= signature_poll_initial_seconds")
        return self


class BuilderConfig(BaseModel):
    signer_name: str
    gpg_key_id: str
    guix_sigs_fork_url: str
    guix_build_dir: Path
    source_repo_owner: str = "bitcoin"
    source_repo_name: str = "bitcoin"
    detached_repo_owner: str = "bitcoin-core"
    detached_repo_name: str = "bitcoin-detached-sigs"
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    multi_package: bool = False
    max_jobs: int = Field(default=8, ge=1)
    hosts: list[str] = Field(default_factory=list)
    required_detached_signers: list[str] = Field(default_factory=lambda: ["osx", "win"])
    commit_attestations: bool = False
    max_concurrent_pipelines: int = Field(default=4, ge=1, le=64)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("signer_name")
    @classmethod
    def _require_signer(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("signer_name must be non-empty")
        return value

    @field_validator("gpg_key_id")
    @classmethod
    def _check_key_id(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("0x"):
            raise ValueError("gpg_key_id must start with '0x'")
        return value

    @field_validator("guix_sigs_fork_url")
    @classmethod
    def _check_fork_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("https://github.com"):
            raise ValueError("guix_sigs_fork_url must start with 'https://github.com'")
        return value

    def render(self) -> str:
        return self.model_dump_json(indent=2)


def load_config(path: Path) -> BuilderConfig:
    """Load and validate the configuration file.

    Raises:
        ConfigError: If the file is missing, unreadable or fails validation.
    """
    try:
        text = safe_read_text(path, "configuration")
    except FileNotFoundError as exc:
        raise ConfigError(f"{exc}. Run `guix-release-builder setup` first.") from exc
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    try:
        config = BuilderConfig.model_validate_json(text)
    except ValidationError as exc:
        raise ConfigError(f"configuration at {path} failed validation: {exc}") from exc
    logger.debug("Loaded configuration from %s", path)
    return config


def save_config(config: BuilderConfig, path: Path) -> None:
    atomic_write_text(path, config.render() + "\n")
    logger.info("Configuration saved to %s", path)


def config_from_mapping(values: dict[str, object]) -> BuilderConfig:
    """Validate raw values, e.g. from the setup wizard, into a config."""
    try:
        return BuilderConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc
