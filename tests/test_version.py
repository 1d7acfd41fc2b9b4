import pytest

from guix_release_builder.models import Tag
from guix_release_builder.version import compare_versions, is_release_tag, sort_tags


@pytest.mark.parametrize("name", ["v27.1", "v0.21.0", "v28.0rc2", "28.0"])
def test_release_tags_accepted(name: str) -> None:
    assert is_release_tag(name)


@pytest.mark.parametrize("name", ["nightly", "v28", "v28.0-beta", "", "v28.0rc"])
def test_other_tags_rejected(name: str) -> None:
    assert not is_release_tag(name)


def test_final_release_sorts_after_candidates() -> None:
    assert compare_versions("v28.0rc1", "v28.0") == -1
    assert compare_versions("v28.0rc2", "v28.0rc10") == -1
    assert compare_versions("v28.0", "v28.0") == 0
    assert compare_versions("v27.10", "v27.9") == 1


def test_sort_tags_across_majors() -> None:
    names = ["v28.0", "v0.21.1", "v27.1", "v28.0rc1", "v27.0"]
    assert sort_tags(names) == ["v0.21.1", "v27.0", "v27.1", "v28.0rc1", "v28.0"]


def test_tag_version_strips_prefix() -> None:
    assert Tag("v28.0rc1").version == "28.0rc1"
    with pytest.raises(ValueError):
        Tag("latest")
