from __future__ import annotations

from pathlib import Path


class BuilderError(RuntimeError):
    """Base class for every error raised by the release builder."""


class ConfigError(BuilderError):
    """Configuration is missing or invalid. Fatal at startup."""


class TransientNetworkError(BuilderError):
    """The tag source could not be reached or rate-limited us. Retryable."""


class AuthError(BuilderError):
    """Credentials were rejected by a remote service. Never retried."""


class BuildFailure(BuilderError):
    """The external build toolchain exited unsuccessfully."""

    def __init__(self, message: str, *, exit_code: int | None = None, log_path: Path | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_path = log_path


class SigningError(BuilderError):
    """gpg or the codesigning tool failed."""


class MissingSignatureError(SigningError):
    """Codesigning was requested before the detached signatures were available."""


class LockContentionError(BuilderError):
    """Another pipeline run already owns the tag."""

    def __init__(self, tag: str, owner: str | None = None) -> None:
        detail = f" (held by {owner})" if owner else ""
        super().__init__(f"tag {tag} is locked by another pipeline run{detail}")
        self.tag = tag
        self.owner = owner


class InvalidTransitionError(BuilderError):
    """A stage change that the pipeline transition table does not allow."""


class WatcherRunningError(BuilderError):
    """A live watcher already serves this state directory."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"a watcher is already running (pid {pid})")
        self.pid = pid
