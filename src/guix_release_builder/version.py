"""Release tag validation and ordering."""

from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Iterable

_TAG_PATTERN = re.compile(r"^v?\d+(\.\d+){1,2}(rc\d+)?$")


def is_release_tag(name: str) -> bool:
    """Return True for tags such as ``v27.1``, ``v0.21.0`` or ``v28.0rc2``."""
    return bool(_TAG_PATTERN.match(name.strip()))


def strip_prefix(name: str) -> str:
    return name[1:] if name.startswith("v") else name


def parse_version(name: str) -> tuple[list[int], int | None]:
    """Split a tag into its numeric components and release candidate number.

    Unparseable components count as zero, matching how upstream tags have
    always been compared.
    """
    base, _, rc = strip_prefix(name.strip()).partition("rc")
    parts: list[int] = []
    for raw in base.split("."):
        try:
            parts.append(int(raw))
        except ValueError:
            parts.append(0)
    rc_number: int | None = None
    if rc:
        try:
            rc_number = int(rc)
        except ValueError:
            rc_number = None
    return parts, rc_number


def compare_versions(left: str, right: str) -> int:
    """Three-way comparison of release tags; a final release sorts after its candidates."""
    left_parts, left_rc = parse_version(left)
    right_parts, right_rc = parse_version(right)

    width = max(len(left_parts), len(right_parts))
    left_padded = left_parts + [-1] * (width - len(left_parts))
    right_padded = right_parts + [-1] * (width - len(right_parts))
    if left_padded != right_padded:
        return -1 if left_padded < right_padded else 1

    if left_rc == right_rc:
        return 0
    if left_rc is None:
        return 1
    if right_rc is None:
        return -1
    return -1 if left_rc < right_rc else 1


def sort_tags(names: Iterable[str]) -> list[str]:
    return sorted(names, key=cmp_to_key(compare_versions))
