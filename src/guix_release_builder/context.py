from __future__ import annotations

import threading
from dataclasses import dataclass, field

from .builder import BuildExecutor, BuildWorkspace, GuixBuildExecutor
from .config import BuilderConfig, load_config
from .models import JobConfig
from .pipeline import PipelineRunner
from .settings import RuntimeSettings
from .signing import GpgSigningGateway, SigningGateway
from .tag_registry import TagRegistry
from .tag_source import GitHubTagSource, TagSource, resolve_github_token


@dataclass
class BuildContext:
    """Everything a command needs, constructed once and passed down explicitly."""

    settings: RuntimeSettings
    config: BuilderConfig
    registry: TagRegistry
    tag_source: TagSource
    executor: BuildExecutor
    gateway: SigningGateway
    job_config: JobConfig
    stop_event: threading.Event = field(default_factory=threading.Event)

    def pipeline_runner(self) -> PipelineRunner:
        return PipelineRunner(
            registry=self.registry,
            executor=self.executor,
            gateway=self.gateway,
            config=self.config,
            settings=self.settings,
            stop_event=self.stop_event,
            job_config=self.job_config,
        )


def build_context(
    settings: RuntimeSettings,
    *,
    config: BuilderConfig | None = None,
    multi_package: bool | None = None,
) -> BuildContext:
    """Load the configuration and wire the production collaborators.

    Raises:
        ConfigError: If the configuration file is missing or invalid.
    """
    config = config if config is not None else load_config(settings.config_file)
    workspace = BuildWorkspace.from_config(config)
    job_config = JobConfig(
        multi_package=config.multi_package if multi_package is None else multi_package,
        max_jobs=config.max_jobs,
    )
    return BuildContext(
        settings=settings,
        config=config,
        registry=TagRegistry(settings.registry_path, stale_after=float(settings.lock_stale_seconds)),
        tag_source=GitHubTagSource(
            config.source_repo_owner,
            config.source_repo_name,
            token=resolve_github_token(settings.config_path),
        ),
        executor=GuixBuildExecutor(workspace),
        gateway=GpgSigningGateway(
            workspace,
            gpg_key_id=config.gpg_key_id,
            signer_name=config.signer_name,
            required_signers=config.required_detached_signers,
            commit_attestations=config.commit_attestations,
        ),
        job_config=job_config,
    )
