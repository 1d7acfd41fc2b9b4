from pathlib import Path

import pytest

from guix_release_builder.config import load_config
from guix_release_builder.errors import SigningError
from guix_release_builder.settings import RuntimeSettings
from guix_release_builder.wizard import run_setup


def _answers(*values: str):
    remaining = list(values)

    def prompt(_question: str) -> str:
        return remaining.pop(0)

    return prompt


def test_setup_reprompts_until_valid(settings: RuntimeSettings, tmp_path: Path) -> None:
    checked: list[str] = []
    prompt = _answers(
        "alice",
        "DEADBEEF",
        "0xDEADBEEF",
        "git@github.com:alice/guix.sigs.git",
        "https://github.com/alice/guix.sigs",
        str(tmp_path / "builds"),
        "y",
    )

    config = run_setup(settings, prompt=prompt, capability_check=checked.append, initialize_workspace=False)

    assert config.gpg_key_id == "0xDEADBEEF"
    assert config.multi_package is True
    assert checked == ["0xDEADBEEF"]
    assert load_config(settings.config_file) == config


def test_setup_keeps_existing_values_as_defaults(settings: RuntimeSettings, tmp_path: Path) -> None:
    run_setup(
        settings,
        prompt=_answers("alice", "0xDEADBEEF", "https://github.com/alice/guix.sigs", str(tmp_path), "n"),
        capability_check=lambda key_id: None,
        initialize_workspace=False,
    )

    config = run_setup(
        settings,
        prompt=_answers("bob", "", "", "", ""),
        capability_check=lambda key_id: None,
        initialize_workspace=False,
    )

    assert config.signer_name == "bob"
    assert config.gpg_key_id == "0xDEADBEEF"
    assert config.guix_build_dir == tmp_path


def test_setup_saves_even_when_key_is_unusable(settings: RuntimeSettings, tmp_path: Path) -> None:
    def unusable(key_id: str) -> None:
        raise SigningError("No secret key")

    run_setup(
        settings,
        prompt=_answers("alice", "0xDEADBEEF", "https://github.com/alice/guix.sigs", str(tmp_path), ""),
        capability_check=unusable,
        initialize_workspace=False,
    )

    assert settings.config_file.is_file()
