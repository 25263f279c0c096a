"""Dedup key resolution for decoded tile features.

Upstream features carry one or more stable identifiers (a registry code,
a ledger number, a numeric feature id). The first non-empty one in a
source's priority list becomes the feature's identity; features with none
of them collapse onto the literal key ``"unknown"``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

UNKNOWN_KEY = "unknown"

DEFAULT_KEY_FIELDS: tuple[str, ...] = ("keycode", "daicyo_ban", "gid")


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def resolve_key(
    attributes: Mapping[str, Any] | None,
    key_fields: Sequence[str] = DEFAULT_KEY_FIELDS,
) -> str:
    """Return the identity key for a feature's attributes.

    Args:
        attributes: Feature properties as decoded from the tile.
        key_fields: Attribute names to try, highest priority first.

    Returns:
        The first non-empty value among ``key_fields`` as a string, or
        ``"unknown"`` if none is present. A numeric ``0`` counts as present.
    """
    if not attributes:
        return UNKNOWN_KEY
    for field in key_fields:
        value = attributes.get(field)
        if not _is_empty(value):
            return str(value)
    return UNKNOWN_KEY
