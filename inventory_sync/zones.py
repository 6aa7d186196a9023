"""Bin hierarchy classifier used to group free-text bin codes into audit zones."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Set, Tuple
import re

from .models import AuditEntry, InventoryItem

NO_LOCATION = "NO_LOCATION"
NG_GROUP = "NG"
AREA_GROUP = "AREAS"
DATA_CHECK_GROUP = "DATA_CHECK"
MISC_GROUP = "MISC"

_EMPTY_BINS = {"", "0", "UNASSIGNED"}
_NUMBERED_BIN = re.compile(r"^([236]\d{2})(?!\d)([A-Z])?")
_TOKEN_SPLIT = re.compile(r"[^A-Z0-9]+")
_MAX_BIN_LENGTH = 8

# Words that show up when a part description was typed into the bin field.
DESCRIPTION_WORDS = frozenset(
    {
        "ALTERNATOR",
        "ASSY",
        "BEARING",
        "BOLT",
        "BRACKET",
        "CLIP",
        "FILTER",
        "GASKET",
        "HOLDER",
        "HOSE",
        "KIT",
        "NUT",
        "PUMP",
        "SCREW",
        "SEAL",
        "SENSOR",
        "SET",
        "SPRING",
        "VALVE",
        "WASHER",
    }
)


def classify_bin(raw_bin: str) -> Tuple[str, str]:
    """Return the ``(group, subgroup)`` zone for a bin code.

    Rules are evaluated in order and the first match wins:

    * empty, ``0`` or ``UNASSIGNED`` -> ``NO_LOCATION``
    * three leading digits starting with 2, 3 or 6 -> the numeric aisle, with
      a trailing letter forming the subgroup (``307A``)
    * ``NG`` prefix -> single ``NG1`` subgroup
    * ``AREA`` prefix -> subgroup up to the first space
    * long codes, codes with spaces or description words -> ``DATA_CHECK``
    * anything else -> ``MISC``
    """

    code = "" if raw_bin is None else str(raw_bin).strip().upper()
    if code in _EMPTY_BINS:
        return NO_LOCATION, "0"

    match = _NUMBERED_BIN.match(code)
    if match:
        prefix, letter = match.group(1), match.group(2)
        return prefix, prefix + letter if letter else prefix

    if code.startswith("NG"):
        return NG_GROUP, "NG1"

    if code.startswith("AREA"):
        return AREA_GROUP, code.split(" ", 1)[0]

    if len(code) > _MAX_BIN_LENGTH or " " in code or _has_description_word(code):
        return DATA_CHECK_GROUP, "BAD_DATA"

    return MISC_GROUP, "GENERAL"


def _has_description_word(code: str) -> bool:
    return any(token in DESCRIPTION_WORDS for token in _TOKEN_SPLIT.split(code) if token)


@dataclass
class ZoneGroup:
    total_items: int = 0
    subgroups: Dict[str, Set[str]] = field(default_factory=dict)


def build_zone_hierarchy(items: Iterable[InventoryItem]) -> Dict[str, ZoneGroup]:
    hierarchy: Dict[str, ZoneGroup] = {}
    for item in items:
        group, subgroup = classify_bin(item.bin)
        zone = hierarchy.setdefault(group, ZoneGroup())
        zone.total_items += 1
        zone.subgroups.setdefault(subgroup, set()).add(item.bin)
    return hierarchy


def bins_for_zones(hierarchy: Mapping[str, ZoneGroup], selection: Iterable[str]) -> Set[str]:
    """Expand selected group or subgroup keys into the raw bins they cover."""

    bins: Set[str] = set()
    for key in selection:
        zone = hierarchy.get(key)
        if zone is not None:
            for subgroup_bins in zone.subgroups.values():
                bins.update(subgroup_bins)
            continue
        for candidate in hierarchy.values():
            if key in candidate.subgroups:
                bins.update(candidate.subgroups[key])
    return bins


def select_audit_entries(items: Iterable[InventoryItem], bins: Iterable[str]) -> List[AuditEntry]:
    selected = set(bins)
    entries = [AuditEntry.from_item(item) for item in items if item.bin in selected]
    entries.sort(key=lambda entry: (entry.bin, entry.part))
    return entries


__all__ = [
    "DESCRIPTION_WORDS",
    "ZoneGroup",
    "bins_for_zones",
    "build_zone_hierarchy",
    "classify_bin",
    "select_audit_entries",
]
