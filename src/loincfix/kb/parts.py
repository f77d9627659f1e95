from __future__ import annotations

from typing import Tuple

# CLASS is treated as a part for matching purposes even though the catalog does not model it as one.
PART_TYPES: Tuple[str, ...] = ("CLASS", "COMPONENT", "PROPERTY", "TIME", "SYSTEM", "SCALE", "METHOD")

# Part types used to pre-filter candidates; CLASS/COMPONENT/METHOD may be relaxed later so they never pre-exclude.
FILTER_PART_TYPES: Tuple[str, ...] = ("PROPERTY", "TIME", "SYSTEM", "SCALE")

# Catalog sentinel for "specimen not specified".
UNSPECIFIED_SYSTEM = "XXX"


class UnknownPartTypeError(AssertionError):
    """Raised when code tries to index or infer an attribute outside PART_TYPES."""
    pass


def check_part_type(part_type: str) -> str:
    if part_type not in PART_TYPES:
        raise UnknownPartTypeError(f"Unknown LOINC part type: {part_type!r}")
    return part_type
