"""
Region and resource-type derivation from free text.

Both functions are pure and total: any input, including ``None``, maps to a
usable key, so a badly typed location never drops a request from the
aggregation.
"""

from __future__ import annotations

import re
from typing import Optional

UNKNOWN_REGION = "unknown"
UNSPECIFIED_TYPE = "unspecified"

# Checked in order; the first keyword group that matches wins.
_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("medical kits", ("medical", "injur", "hospital", "clinic", "medicine")),
    ("water",        ("water", "thirst", "hydration", "drinking")),
    ("food",         ("food", "ration", "meal", "hungry")),
    ("blankets",     ("shelter", "blanket", "cold", "tent")),
    ("fuel",         ("fuel", "diesel", "gasoline", "petrol")),
    ("baby formula", ("baby", "babies", "infant", "formula")),
    ("tarpaulins",   ("tarp", "cover", "roof")),
)

_WORD = re.compile(r"[a-z]+")


def normalize_region(location: Optional[str]) -> str:
    """Return the region key for a location string.

    The region is the first comma-separated segment, trimmed and lower-cased::

        >>> normalize_region("Kochi, Ernakulam")
        'kochi'
        >>> normalize_region("  ")
        'unknown'
    """
    if not location:
        return UNKNOWN_REGION
    head = location.split(",", 1)[0].strip().lower()
    return head or UNKNOWN_REGION


def infer_resource_type(details: Optional[str]) -> str:
    """Infer the resource type a request most plausibly needs.

    Matches whole-word prefixes against ``_TYPE_KEYWORDS`` so ``"injuries"``
    still maps to medical kits.  Returns ``UNSPECIFIED_TYPE`` when nothing
    matches.
    """
    if not details:
        return UNSPECIFIED_TYPE
    words = _WORD.findall(details.lower())
    for resource_type, keywords in _TYPE_KEYWORDS:
        if any(word.startswith(kw) for word in words for kw in keywords):
            return resource_type
    return UNSPECIFIED_TYPE
