from importlib.metadata import version

from .builder import BuildExecutor, BuildWorkspace, GuixBuildExecutor
from .config import BuilderConfig, RetryPolicy, load_config, save_config
from .context import BuildContext, build_context
from .errors import (
    AuthError,
    BuildFailure,
    BuilderError,
    ConfigError,
    InvalidTransitionError,
    LockContentionError,
    MissingSignatureError,
    SigningError,
    TransientNetworkError,
    WatcherRunningError,
)
from .models import (
    AttestationResult,
    BuildResult,
    CleanReport,
    CodesignResult,
    JobConfig,
    LockRecord,
    PipelineRun,
    PipelineStage,
    Tag,
    TagRegistryEntry,
)
from .pipeline import PipelineRunner
from .settings import RuntimeSettings
from .signing import GpgSigningGateway, SigningGateway
from .tag_registry import TagRegistry
from .tag_source import GitHubTagSource, TagSource
from .version import compare_versions, is_release_tag, sort_tags
from .watcher import Watcher


def get_version() -> str:
    try:
        return version("guix-release-builder")
    except Exception:
        return "0.0.0"


__all__ = [
    "AttestationResult",
    "AuthError",
    "BuildContext",
    "BuildExecutor",
    "BuildFailure",
    "BuildResult",
    "BuildWorkspace",
    "BuilderConfig",
    "BuilderError",
    "CleanReport",
    "CodesignResult",
    "ConfigError",
    "GitHubTagSource",
    "GpgSigningGateway",
    "GuixBuildExecutor",
    "InvalidTransitionError",
    "JobConfig",
    "LockContentionError",
    "LockRecord",
    "MissingSignatureError",
    "PipelineRun",
    "PipelineRunner",
    "PipelineStage",
    "RetryPolicy",
    "RuntimeSettings",
    "SigningError",
    "SigningGateway",
    "Tag",
    "TagRegistry",
    "TagRegistryEntry",
    "TagSource",
    "TransientNetworkError",
    "Watcher",
    "WatcherRunningError",
    "build_context",
    "compare_versions",
    "get_version",
    "is_release_tag",
    "load_config",
    "save_config",
    "sort_tags",
]
