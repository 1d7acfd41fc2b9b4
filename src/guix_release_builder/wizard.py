"""Interactive first-run setup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from .builder import BuildWorkspace
from .config import BuilderConfig, config_from_mapping, load_config, save_config
from .errors import ConfigError, SigningError
from .settings import RuntimeSettings
from .signing import check_signing_capability

logger = logging.getLogger(__name__)

Prompt = Callable[[str], str]


def _ask(prompt: Prompt, question: str, *, default: str | None = None, check: Callable[[str], str | None] | None = None) -> str:
    suffix = f" [{default}]" if default else ""
    while True:
        answer = prompt(f"{question}{suffix}: ").strip()
        if not answer and default is not None:
            answer = default
        if not answer:
            print("A value is required.")
            continue
        problem = check(answer) if check is not None else None
        if problem is None:
            return answer
        print(problem)


def _ask_yes_no(prompt: Prompt, question: str, *, default: bool) -> bool:
    hint = "Y/n" if default else "y/N"
    while True:
        answer = prompt(f"{question} [{hint}]: ").strip().lower()
        if not answer:
            return default
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print("Please answer y or n.")


def _check_key_id(value: str) -> str | None:
    return None if value.startswith("0x") else "The GPG key id must start with 0x, e.g. 0x1234ABCD."


def _check_fork_url(value: str) -> str | None:
    return None if value.startswith("https://github.com") else "The fork URL must start with https://github.com."


def run_setup(
    settings: RuntimeSettings,
    *,
    prompt: Prompt = input,
    capability_check: Callable[[str], None] = check_signing_capability,
    initialize_workspace: bool = True,
) -> BuilderConfig:
    """Ask for the signer identity and workspace, then save the configuration.

    Existing values are offered as defaults, so re-running setup edits the
    current configuration.

    Raises:
        ConfigError: If the collected values do not form a valid configuration.
    """
    current: BuilderConfig | None = None
    if settings.config_file.is_file():
        try:
            current = load_config(settings.config_file)
        except ConfigError as exc:
            logger.warning("Existing configuration ignored: %s", exc)

    signer_name = _ask(prompt, "Signer name (your guix.sigs directory)", default=current.signer_name if current else None)
    gpg_key_id = _ask(
        prompt,
        "GPG key id used for attestations",
        default=current.gpg_key_id if current else None,
        check=_check_key_id,
    )
    fork_url = _ask(
        prompt,
        "URL of your guix.sigs fork",
        default=current.guix_sigs_fork_url if current else None,
        check=_check_fork_url,
    )
    build_dir = _ask(
        prompt,
        "Build workspace directory",
        default=str(current.guix_build_dir if current else settings.default_build_dir),
    )
    multi_package = _ask_yes_no(
        prompt,
        "Build packages in parallel (needs a large machine)",
        default=current.multi_package if current else False,
    )

    values: dict[str, object] = current.model_dump() if current else {}
    values.update(
        signer_name=signer_name,
        gpg_key_id=gpg_key_id,
        guix_sigs_fork_url=fork_url,
        guix_build_dir=Path(build_dir).expanduser(),
        multi_package=multi_package,
    )
    config = config_from_mapping(values)

    try:
        capability_check(config.gpg_key_id)
    except SigningError as exc:
        logger.warning("%s. Attestations will fail until the key is usable.", exc)

    save_config(config, settings.config_file)
    if initialize_workspace:
        workspace = BuildWorkspace.from_config(config)
        workspace.initialize(config.guix_sigs_fork_url)
        logger.info("Build workspace ready at %s", workspace.root)
    return config
