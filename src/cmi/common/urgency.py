from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Optional

from cmi.common.model import CanonicalMessage, LabFlag, Urgency

_RANK = {
    Urgency.ROUTINE: 0,
    Urgency.URGENT: 1,
    Urgency.STAT: 2,
    Urgency.CRITICAL: 3,
}

# Interpretation / abnormal-flag codes shared by HL7 OBX-8 and FHIR interpretation.
_NORMAL_CODES = {"N", "NORMAL"}
_ABNORMAL_CODES = {"H", "L", "A", "HU", "LU", "ABNORMAL"}
_CRITICAL_CODES = {"HH", "LL", "AA", "C", "CC", "CRITICAL"}

# Priority tokens from OBR-27, FHIR `priority` and middleware `urgency`/`priority`.
_PRIORITY_TOKENS = {
    "s": Urgency.STAT,
    "stat": Urgency.STAT,
    "a": Urgency.URGENT,
    "asap": Urgency.URGENT,
    "urgent": Urgency.URGENT,
    "critical": Urgency.CRITICAL,
    "emergent": Urgency.CRITICAL,
}

_FLAG_RANK = {
    LabFlag.NORMAL: 0,
    LabFlag.UNKNOWN: 1,
    LabFlag.ABNORMAL: 2,
    LabFlag.CRITICAL: 3,
}


def rank(level: Urgency) -> int:
    return _RANK[level]


def max_urgency(*levels: Urgency) -> Urgency:
    out = Urgency.ROUTINE
    for level in levels:
        if _RANK[level] > _RANK[out]:
            out = level
    return out


def normalize_flag(code: Optional[str]) -> LabFlag:
    """Map a raw abnormal-flag / interpretation code onto the three-tier scale.

    Blank maps to normal (an HL7 OBX-8 left empty means "no abnormality").
    Codes we do not know map to unknown rather than to normal.
    """
    c = (code or "").strip().upper()
    if not c or c in _NORMAL_CODES:
        return LabFlag.NORMAL
    if c in _CRITICAL_CODES:
        return LabFlag.CRITICAL
    if c in _ABNORMAL_CODES:
        return LabFlag.ABNORMAL
    return LabFlag.UNKNOWN


def most_severe_flag(flags: Iterable[LabFlag]) -> LabFlag:
    out = LabFlag.NORMAL
    for flag in flags:
        if _FLAG_RANK[flag] > _FLAG_RANK[out]:
            out = flag
    return out


def urgency_from_priority(token: Optional[str]) -> Urgency:
    t = (token or "").strip().lower()
    return _PRIORITY_TOKENS.get(t, Urgency.ROUTINE)


def classify_urgency(
    flags: Iterable[LabFlag] = (),
    priority: Optional[str] = None,
    *,
    abnormal_as_urgent: bool = False,
) -> Urgency:
    """
    Single message-level urgency from per-value flags and a source priority.

    A critical flag always yields CRITICAL; nothing can lower it.
    """
    flags = list(flags)
    if LabFlag.CRITICAL in flags:
        return Urgency.CRITICAL

    level = urgency_from_priority(priority)
    if abnormal_as_urgent and LabFlag.ABNORMAL in flags:
        level = max_urgency(level, Urgency.URGENT)
    return level


def enforce_critical(message: CanonicalMessage) -> CanonicalMessage:
    """Raise message urgency to CRITICAL when any lab result is critical."""
    flags = [r.flag for r in message.content.lab_results]
    if LabFlag.CRITICAL in flags and message.content.urgency != Urgency.CRITICAL:
        return replace(message, content=replace(message.content, urgency=Urgency.CRITICAL))
    return message
