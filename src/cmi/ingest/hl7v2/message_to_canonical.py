from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from cmi.common.model import (
    CanonicalMessage,
    Content,
    LabFlag,
    LabResult,
    MessageType,
    OrderDetails,
    Patient,
    Provider,
    new_message_id,
    utc_now_iso,
)
from cmi.common.ranges import format_reference_range, parse_reference_range
from cmi.common.urgency import classify_urgency, most_severe_flag, normalize_flag

_SEGMENT_SPLIT_RE = re.compile(r"[\r\n]+")
_TS_RE = re.compile(r"^(\d{4,14})(?:\.\d+)?(?:[+-]\d{4})?$")

_TYPE_MAP = {
    "ORU^R01": MessageType.LAB_RESULT,
    "ORM^O01": MessageType.LAB_ORDER_REQUEST,
    "SIU^S12": MessageType.SCHEDULE_STUDY,
    "ADT^A08": MessageType.GENERAL_NOTIFICATION,
    "RDE^O11": MessageType.MEDICATION_REFILL,
    "REF^I12": MessageType.REFERRAL_REQUEST,
}

_SUBJECT_PREFIX = {
    "ORU^R01": "Lab Result",
    "ORM^O01": "Lab Order Request",
    "SIU^S12": "Scheduling Request",
    "RDE^O11": "Medication Order",
    "REF^I12": "Referral",
}

# Coded OBX value types whose readable text sits in component 2.
_CODED_VALUE_TYPES = {"CE", "CWE", "CNE"}


@dataclass(frozen=True)
class Delimiters:
    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"


@dataclass(frozen=True)
class Segment:
    id: str
    fields: Tuple[str, ...]  # fields[0] is the segment id

    def field(self, index: int) -> str:
        # MSH-1 is the field separator itself, so MSH field n sits at split position n-1.
        pos = index - 1 if self.id == "MSH" else index
        if pos < 0 or pos >= len(self.fields):
            return ""
        return self.fields[pos]


@dataclass(frozen=True)
class SegmentedMessage:
    raw: str
    message_type: str  # e.g. "ORU^R01", "" when no header
    delimiters: Delimiters
    segments: Tuple[Segment, ...]

    def first(self, segment_id: str) -> Optional[Segment]:
        for s in self.segments:
            if s.id == segment_id:
                return s
        return None

    def all(self, segment_id: str) -> List[Segment]:
        return [s for s in self.segments if s.id == segment_id]


def _coerce_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return raw if isinstance(raw, str) else str(raw)


def _detect_delimiters(lines: List[str]) -> Delimiters:
    for line in lines:
        if line.startswith("MSH") and len(line) > 4:
            sep = line[3]
            enc = line[4:].split(sep, 1)[0]
            d = Delimiters()
            return Delimiters(
                field=sep,
                component=enc[0] if len(enc) > 0 else d.component,
                repetition=enc[1] if len(enc) > 1 else d.repetition,
                escape=enc[2] if len(enc) > 2 else d.escape,
                subcomponent=enc[3] if len(enc) > 3 else d.subcomponent,
            )
    return Delimiters()


def parse_segments(raw: Any) -> SegmentedMessage:
    text = _coerce_text(raw)
    lines = [ln.strip() for ln in _SEGMENT_SPLIT_RE.split(text) if ln.strip()]
    delims = _detect_delimiters(lines)

    segments: List[Segment] = []
    for line in lines:
        fields = line.split(delims.field)
        seg_id = fields[0].strip().upper()
        if len(seg_id) != 3 or not seg_id.isalnum():
            continue
        segments.append(Segment(id=seg_id, fields=tuple(fields)))

    msg = SegmentedMessage(raw=text, message_type="", delimiters=delims, segments=tuple(segments))
    msh = msg.first("MSH")
    if msh is not None:
        code = _component(msg, msh.field(9), 0)
        event = _component(msg, msh.field(9), 1)
        message_type = f"{code}^{event}" if event else code
        msg = SegmentedMessage(raw=text, message_type=message_type, delimiters=delims, segments=msg.segments)
    return msg


def _unescape(value: str, d: Delimiters) -> str:
    if d.escape not in value:
        return value
    e = d.escape
    return (
        value.replace(f"{e}F{e}", d.field)
        .replace(f"{e}S{e}", d.component)
        .replace(f"{e}R{e}", d.repetition)
        .replace(f"{e}T{e}", d.subcomponent)
        .replace(f"{e}E{e}", e)
    )


def _component(msg: SegmentedMessage, value: str, index: int) -> str:
    d = msg.delimiters
    first_rep = value.split(d.repetition)[0] if value else ""
    parts = first_rep.split(d.component)
    if index >= len(parts):
        return ""
    return _unescape(parts[index], d).strip()


def format_hl7_timestamp(ts: Optional[str]) -> str:
    """
    YYYYMMDDHHMMSS -> YYYY-MM-DDTHH:MM:SS.

    Truncated stamps are padded (month/day to 01, time to 00); fractional
    seconds and zone offsets are dropped. Non-numeric input is returned as-is.
    """
    ts = (ts or "").strip()
    if not ts:
        return ""
    m = _TS_RE.match(ts)
    if not m:
        return ts
    digits = m.group(1)
    year, rest = digits[:4], digits[4:]
    parts = [rest[i:i + 2].zfill(2) for i in range(0, len(rest), 2)]
    defaults = ["01", "01", "00", "00", "00"]
    month, day, hour, minute, second = (parts + defaults[len(parts):])[:5]
    return f"{year}-{month}-{day}T{hour}:{minute}:{second}"


def _normalize_range(text: str, units: str) -> str:
    bounds = parse_reference_range(text)
    if bounds is None:
        return text
    low, high, unit = bounds
    return format_reference_range(low, high, unit or units)


def _extract_patient(msg: SegmentedMessage, pid: Optional[Segment]) -> Patient:
    if pid is None:
        return Patient.unknown()
    patient_id = _component(msg, pid.field(3), 0)
    name = pid.field(5)
    return Patient.build(
        mrn=patient_id,
        first_name=_component(msg, name, 1),
        last_name=_component(msg, name, 0),
        dob=format_hl7_timestamp(_component(msg, pid.field(7), 0))[:10],
        sex=_component(msg, pid.field(8), 0),
        external_patient_id=patient_id,
    )


def _provider_from_xcn(msg: SegmentedMessage, xcn: str) -> Optional[Provider]:
    if not xcn.strip():
        return None
    prefix = _component(msg, xcn, 5)
    given = _component(msg, xcn, 2)
    family = _component(msg, xcn, 1)
    name = " ".join(p for p in (prefix, given, family) if p)
    return Provider.build(
        id=_component(msg, xcn, 0),
        name=name,
        role=_component(msg, xcn, 9) or "Ordering Provider",
    )


def _extract_provider(msg: SegmentedMessage, orc: Optional[Segment], obr: Optional[Segment]) -> Provider:
    provider = None
    if orc is not None:
        provider = _provider_from_xcn(msg, orc.field(12))
    if provider is None and obr is not None:
        provider = _provider_from_xcn(msg, obr.field(16))
    return provider or Provider.unknown()


def _obr_priority(msg: SegmentedMessage, obr: Optional[Segment]) -> str:
    if obr is None:
        return ""
    raw = obr.field(27)
    if msg.delimiters.component in raw:
        return _component(msg, raw, 5)
    return _unescape(raw, msg.delimiters).strip()


def _abnormal_flag(msg: SegmentedMessage, raw: str) -> LabFlag:
    # OBX-8 repeats (v2.5+); keep the most severe
    reps = raw.split(msg.delimiters.repetition) if raw else [""]
    return most_severe_flag(normalize_flag(_component(msg, rep, 0)) for rep in reps)


def _extract_lab_results(msg: SegmentedMessage) -> List[LabResult]:
    out: List[LabResult] = []
    for obx in msg.all("OBX"):
        value_type = obx.field(2).strip().upper()
        identifier = obx.field(3)
        raw_value = obx.field(5)
        if value_type in _CODED_VALUE_TYPES:
            value = _component(msg, raw_value, 1) or _component(msg, raw_value, 0)
        else:
            value = _unescape(raw_value.split(msg.delimiters.repetition)[0], msg.delimiters).strip()
        units = _component(msg, obx.field(6), 0)
        ref_text = _unescape(obx.field(7), msg.delimiters).strip()

        out.append(
            LabResult(
                test_name=_component(msg, identifier, 1) or _component(msg, identifier, 0),
                test_code=_component(msg, identifier, 0),
                value=value,
                units=units,
                reference_range=_normalize_range(ref_text, units),
                flag=_abnormal_flag(msg, obx.field(8)),
                collection_time=format_hl7_timestamp(_component(msg, obx.field(14), 0)),
            )
        )
    return out


def _extract_order_details(msg: SegmentedMessage, orc: Optional[Segment], obr: Segment) -> OrderDetails:
    service = obr.field(4)
    code = _component(msg, service, 0)
    name = _component(msg, service, 1)
    order_id = _component(msg, orc.field(2), 0) if orc is not None else ""
    return OrderDetails(
        order_id=order_id or _component(msg, obr.field(2), 0),
        order_type=code,
        order_description=name or code,
        status=_component(msg, orc.field(5), 0) if orc is not None else "",
        priority=_obr_priority(msg, obr) or "routine",
    )


def _build_subject(msg: SegmentedMessage, obr: Optional[Segment]) -> str:
    test_name = _component(msg, obr.field(4), 1) if obr is not None else ""
    prefix = _SUBJECT_PREFIX.get(msg.message_type)
    if prefix:
        return f"{prefix}: {test_name}".strip()
    return f"Clinical Message: {msg.message_type or 'UNKNOWN'}"


def to_canonical(raw: Any) -> CanonicalMessage:
    """
    Segmented (HL7v2) text -> one canonical message.

    Never raises on malformed input: missing segments produce sentinel
    patient/provider values and an empty or absent order section.
    """
    msg = parse_segments(raw)
    msh = msg.first("MSH")
    pid = msg.first("PID")
    orc = msg.first("ORC")
    obr = msg.first("OBR")

    lab_results = _extract_lab_results(msg)
    urgency = classify_urgency(
        (r.flag for r in lab_results),
        _obr_priority(msg, obr),
    )

    message_id = _component(msg, msh.field(10), 0) if msh is not None else ""
    timestamp = format_hl7_timestamp(_component(msg, msh.field(7), 0)) if msh is not None else ""

    return CanonicalMessage(
        message_id=message_id or new_message_id("MSG"),
        timestamp=timestamp or utc_now_iso(),
        message_type=_TYPE_MAP.get(msg.message_type, MessageType.GENERAL_NOTIFICATION),
        patient=_extract_patient(msg, pid),
        provider=_extract_provider(msg, orc, obr),
        content=Content(
            subject=_build_subject(msg, obr),
            body=msg.raw,
            urgency=urgency,
            lab_results=tuple(lab_results),
            order_details=_extract_order_details(msg, orc, obr) if obr is not None else None,
        ),
    )
