"""Derived file naming and lineage.

A Derived file is stored as ``<tag><original name>``. The tag is either
``speed_<factor>x_`` or the legacy ``faster_`` prefix, which always meant
2x. The tag is the only link between a Derived file and its Original, so
lineage is resolved by stripping the tag and comparing the remainder with
Original names exactly.
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

SPEED_TAG = re.compile(r"^speed_(?P<factor>\d+(?:\.\d+)?)x_(?P<source>.+)$")
LEGACY_PREFIX = "faster_"
LEGACY_FACTOR = 2.0


def format_speed(speed: float) -> str:
    """Shortest decimal text for a speed factor: 1.5 -> "1.5", 2.0 -> "2"."""
    text = repr(float(speed))
    if text.endswith(".0"):
        text = text[:-2]
    return text


def derive_name(original: str, applied_speed: float) -> str:
    return f"speed_{format_speed(applied_speed)}x_{original}"


def parse_derived(name: str) -> Optional[Tuple[str, float]]:
    """Return ``(source_name, speed_factor)`` for a Derived name, else None."""
    match = SPEED_TAG.match(name)
    if match:
        return match.group("source"), float(match.group("factor"))
    if name.startswith(LEGACY_PREFIX) and len(name) > len(LEGACY_PREFIX):
        return name[len(LEGACY_PREFIX):], LEGACY_FACTOR
    return None


def is_derived(name: str) -> bool:
    return parse_derived(name) is not None


def source_of(name: str) -> Optional[str]:
    parsed = parse_derived(name)
    return parsed[0] if parsed else None


def speed_of(name: str) -> float:
    """Speed encoded in a name; Originals play at 1.0."""
    parsed = parse_derived(name)
    return parsed[1] if parsed else 1.0


def lineage_of(name: str, all_names: Iterable[str]) -> Optional[str]:
    """The Original in ``all_names`` that ``name`` was derived from, if any."""
    source = source_of(name)
    if source is None or is_derived(source):
        return None
    return source if source in set(all_names) else None


def cascade_targets(original: str, all_names: Iterable[str]) -> List[str]:
    """Every Derived name whose lineage is ``original``."""
    return [name for name in all_names if source_of(name) == original]


def group_versions(
    names: Sequence[str], mtimes: Optional[Mapping[str, float]] = None
) -> Dict[str, List[str]]:
    """Derived versions of each Original, oldest first.

    Ordered by mtime; without mtimes (or on equal mtimes) by listing
    position, so the last element is always the current version.
    """
    known = {name for name in names if not is_derived(name)}
    mtimes = mtimes or {}

    ranked: Dict[str, List[Tuple[float, int, str]]] = {}
    for index, name in enumerate(names):
        source = lineage_of(name, known)
        if source is None:
            continue
        ranked.setdefault(source, []).append((mtimes.get(name, 0.0), index, name))

    return {source: [name for _, _, name in sorted(items)] for source, items in ranked.items()}


def resolve_listing(
    names: Sequence[str], mtimes: Optional[Mapping[str, float]] = None
) -> List[Tuple[str, Optional[str]]]:
    """Pair each Original, in listing order, with its most recent Derived version."""
    versions = group_versions(names, mtimes)
    return [
        (name, versions[name][-1] if name in versions else None)
        for name in names
        if not is_derived(name)
    ]
