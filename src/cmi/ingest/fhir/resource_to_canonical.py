from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cmi.common.model import (
    CanonicalMessage,
    Content,
    LabFlag,
    LabResult,
    MessageType,
    OrderDetails,
    Patient,
    Provider,
    SchedulingInfo,
    new_message_id,
    utc_now_iso,
)
from cmi.common.ranges import format_number, format_reference_range
from cmi.common.urgency import classify_urgency, normalize_flag, urgency_from_priority

logger = logging.getLogger(__name__)

LAB_CATEGORY_CODE = "108252007"  # SNOMED "Laboratory procedure"

_NAME_SPLIT_RE = re.compile(r"[\s,]+")


class ResourceType(str, Enum):
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    OBSERVATION = "Observation"
    SERVICE_REQUEST = "ServiceRequest"
    MEDICATION_REQUEST = "MedicationRequest"
    COMMUNICATION = "Communication"


def _str(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _concept_text(cc: Any, default: str = "") -> str:
    # CodeableConcept: prefer text, then the first coding's display
    if not isinstance(cc, dict):
        return default
    return _str(cc.get("text")) or _str(_first(cc.get("coding")).get("display")) or default


def _resource_id(r: Dict[str, Any]) -> str:
    # Prefer resource id; fallback to identifier.value
    rid = _str(r.get("id"))
    if rid:
        return rid
    for ident in r.get("identifier") or []:
        if isinstance(ident, dict) and _str(ident.get("value")):
            return _str(ident["value"])
    return ""


def _strip_type_prefix(reference: str) -> str:
    # "Patient/123" -> "123"
    return reference.strip().split("/")[-1] if reference else ""


def _patient_from_reference(ref: Any) -> Patient:
    if not isinstance(ref, dict) or not ref:
        return Patient.unknown()

    patient_id = _strip_type_prefix(_str(ref.get("reference")))
    if not patient_id:
        ident = ref.get("identifier") if isinstance(ref.get("identifier"), dict) else {}
        patient_id = _str(ident.get("value"))

    parts = [p for p in _NAME_SPLIT_RE.split(_str(ref.get("display"))) if p]
    return Patient.build(
        mrn=patient_id,
        first_name=parts[1] if len(parts) > 1 else "",
        last_name=parts[0] if parts else "",
        external_patient_id=patient_id,
    )


def _provider_from_reference(ref: Any, role: str = "Ordering Provider") -> Provider:
    if not isinstance(ref, dict) or not ref:
        return Provider.unknown()
    return Provider.build(
        id=_strip_type_prefix(_str(ref.get("reference"))),
        name=_str(ref.get("display")),
        role=role,
    )


def _reference_range_text(rr: Dict[str, Any]) -> str:
    if not rr:
        return ""
    text = _str(rr.get("text"))
    if text:
        return text
    low_value, low_unit = _bound(rr.get("low"))
    high_value, high_unit = _bound(rr.get("high"))
    unit = _str(rr.get("unit")) or low_unit or high_unit
    return format_reference_range(low_value, high_value, unit)


def _bound(b: Any) -> tuple[Any, str]:
    # Quantity {value, unit} or a bare number
    if isinstance(b, dict):
        return b.get("value"), _str(b.get("unit"))
    if isinstance(b, (int, float)) and not isinstance(b, bool):
        return b, ""
    return None, ""


def _interpretation_flag(o: Dict[str, Any]) -> LabFlag:
    interp = _first(o.get("interpretation"))
    coding = _first(interp.get("coding"))
    code = _str(interp.get("code")) or _str(coding.get("code")) or _str(interp.get("text"))
    if not code:
        return LabFlag.UNKNOWN
    return normalize_flag(code)


def _value_and_unit(o: Dict[str, Any]) -> tuple[str, str]:
    vq = o.get("valueQuantity")
    if isinstance(vq, dict):
        unit = _str(vq.get("unit")) or _str(vq.get("code"))
        return format_number(vq.get("value")), unit

    if "valueString" in o:
        return _str(o.get("valueString")), ""
    if "valueInteger" in o:
        return format_number(o.get("valueInteger")), ""
    if "valueBoolean" in o:
        return format_number(o.get("valueBoolean")), ""
    if isinstance(o.get("valueCodeableConcept"), dict):
        return _concept_text(o["valueCodeableConcept"]), ""
    return "", ""


def _from_observation(o: Dict[str, Any]) -> CanonicalMessage:
    test_name = _concept_text(o.get("code"), "Unknown Test")
    test_code = _str(_first((o.get("code") or {}).get("coding")).get("code"))
    value, units = _value_and_unit(o)
    ref_range = _reference_range_text(_first(o.get("referenceRange")))
    flag = _interpretation_flag(o)
    effective = _str(o.get("effectiveDateTime")) or _str(o.get("issued"))

    result = LabResult(
        test_name=test_name,
        test_code=test_code,
        value=value,
        units=units,
        reference_range=ref_range,
        flag=flag,
        collection_time=effective,
    )
    shown_flag = flag.value if flag != LabFlag.UNKNOWN else "normal"

    return CanonicalMessage(
        message_id=_resource_id(o) or new_message_id("FHIR-OBS"),
        timestamp=effective or utc_now_iso(),
        message_type=MessageType.LAB_RESULT,
        patient=_patient_from_reference(o.get("subject")),
        provider=_provider_from_reference(_first(o.get("performer")), role="Performer"),
        content=Content(
            subject=f"Lab Result: {test_name}",
            body=f"{test_name}: {value} {units} (ref: {ref_range}) [{shown_flag}]",
            urgency=classify_urgency([flag], abnormal_as_urgent=True),
            lab_results=(result,),
        ),
    )


def _from_diagnostic_report(report: Dict[str, Any]) -> CanonicalMessage:
    test_name = _concept_text(report.get("code"), "Unknown Test")
    effective = _str(report.get("effectiveDateTime"))

    results = []
    for ref in report.get("result") or []:
        if not isinstance(ref, dict):
            continue
        results.append(
            LabResult(
                test_name=_str(ref.get("display")) or "Unknown",
                test_code="",
                value="",
                units="",
                reference_range="",
                flag=LabFlag.UNKNOWN,
                collection_time=effective,
            )
        )

    return CanonicalMessage(
        message_id=_resource_id(report) or new_message_id("FHIR-DR"),
        timestamp=_str(report.get("issued")) or effective or utc_now_iso(),
        message_type=MessageType.LAB_RESULT,
        patient=_patient_from_reference(report.get("subject")),
        provider=_provider_from_reference(_first(report.get("performer")), role="Performer"),
        content=Content(
            subject=f"Lab Result: {test_name}",
            body=_str(report.get("conclusion")) or f"DiagnosticReport for {test_name}",
            urgency=classify_urgency((r.flag for r in results)),
            lab_results=tuple(results),
        ),
    )


def _is_lab_category(categories: Any) -> bool:
    for cat in categories or []:
        if not isinstance(cat, dict):
            continue
        if "lab" in _str(cat.get("text")).lower():
            return True
        for coding in cat.get("coding") or []:
            if not isinstance(coding, dict):
                continue
            if _str(coding.get("code")) == LAB_CATEGORY_CODE:
                return True
            if "lab" in _str(coding.get("display")).lower():
                return True
    return False


def _from_service_request(req: Dict[str, Any]) -> CanonicalMessage:
    study_name = _concept_text(req.get("code"), "Unknown Study")
    is_lab = _is_lab_category(req.get("category"))
    priority = _str(req.get("priority"))

    reasons = [_concept_text(r) for r in req.get("reasonCode") or []]
    reasons = [r for r in reasons if r]
    notes = [_str(n.get("text")) for n in req.get("note") or [] if isinstance(n, dict)]
    notes = [n for n in notes if n]

    order_details = None
    scheduling_info = None
    if is_lab:
        order_details = OrderDetails(
            order_id=_str(req.get("id")),
            order_type="Lab Order",
            order_description=study_name,
            status=_str(req.get("status")),
            priority=priority or "routine",
        )
    else:
        location = _first(req.get("locationReference")).get("display")
        scheduling_info = SchedulingInfo(
            study_type=study_name,
            preferred_date=_str(req.get("occurrenceDateTime")) or None,
            location=_str(location) or None,
            instructions="; ".join(notes) or None,
        )

    return CanonicalMessage(
        message_id=_resource_id(req) or new_message_id("FHIR-SR"),
        timestamp=_str(req.get("authoredOn")) or utc_now_iso(),
        message_type=MessageType.LAB_ORDER_REQUEST if is_lab else MessageType.SCHEDULE_STUDY,
        patient=_patient_from_reference(req.get("subject")),
        provider=_provider_from_reference(req.get("requester")),
        content=Content(
            subject=f"{'Lab Order' if is_lab else 'Scheduling'} Request: {study_name}",
            body="; ".join(reasons) or study_name,
            urgency=urgency_from_priority(priority),
            order_details=order_details,
            scheduling_info=scheduling_info,
        ),
    )


def _from_medication_request(req: Dict[str, Any]) -> CanonicalMessage:
    med_ref = req.get("medicationReference") if isinstance(req.get("medicationReference"), dict) else {}
    med_name = (
        _concept_text(req.get("medicationCodeableConcept"))
        or _str(med_ref.get("display"))
        or "Unknown Medication"
    )
    dose = _str(_first(req.get("dosageInstruction")).get("text"))
    priority = _str(req.get("priority"))
    body = f"{med_name} - {dose}" if dose else med_name

    # New prescription vs refill is left to the reasoning step.
    return CanonicalMessage(
        message_id=_resource_id(req) or new_message_id("FHIR-MR"),
        timestamp=_str(req.get("authoredOn")) or utc_now_iso(),
        message_type=MessageType.MEDICATION_REFILL,
        patient=_patient_from_reference(req.get("subject")),
        provider=_provider_from_reference(req.get("requester")),
        content=Content(
            subject=f"Medication Request: {med_name}",
            body=body,
            urgency=urgency_from_priority(priority),
            order_details=OrderDetails(
                order_id=_str(req.get("id")),
                order_type="Medication",
                order_description=f"{med_name} {dose}".strip(),
                status=_str(req.get("status")),
                priority=priority or "routine",
            ),
        ),
    )


def _communication_type(category: str, body: str) -> MessageType:
    # Keyword heuristic; best-effort routing only.
    haystack = f"{category}\n{body}".lower()
    if "call" in haystack:
        return MessageType.CALL_OFFICE
    if "follow" in haystack:
        return MessageType.FOLLOW_UP_NEEDED
    return MessageType.GENERAL_NOTIFICATION


def _from_communication(comm: Dict[str, Any]) -> CanonicalMessage:
    parts = [_str(p.get("contentString")) for p in comm.get("payload") or [] if isinstance(p, dict)]
    body = "\n".join(p for p in parts if p)
    category = _concept_text(_first(comm.get("category")), "Clinical Message")

    return CanonicalMessage(
        message_id=_resource_id(comm) or new_message_id("FHIR-COMM"),
        timestamp=_str(comm.get("sent")) or utc_now_iso(),
        message_type=_communication_type(category, body),
        patient=_patient_from_reference(comm.get("subject")),
        provider=_provider_from_reference(comm.get("sender"), role="Sender"),
        content=Content(
            subject=category,
            body=body,
            urgency=urgency_from_priority(_str(comm.get("priority"))),
        ),
    )


Extractor = Callable[[Dict[str, Any]], CanonicalMessage]

# Every ResourceType member must have an entry (checked in tests).
EXTRACTORS: Dict[ResourceType, Extractor] = {
    ResourceType.DIAGNOSTIC_REPORT: _from_diagnostic_report,
    ResourceType.OBSERVATION: _from_observation,
    ResourceType.SERVICE_REQUEST: _from_service_request,
    ResourceType.MEDICATION_REQUEST: _from_medication_request,
    ResourceType.COMMUNICATION: _from_communication,
}


def resource_type_of(resource: Any) -> Optional[ResourceType]:
    if not isinstance(resource, dict):
        return None
    try:
        return ResourceType(resource.get("resourceType"))
    except ValueError:
        return None


def resource_to_canonical(resource: Dict[str, Any]) -> Optional[CanonicalMessage]:
    """One supported resource -> one message; unsupported or untyped -> None."""
    rtype = resource_type_of(resource)
    if rtype is None:
        return None
    return EXTRACTORS[rtype](resource)


def _bundle_to_canonical(bundle: Dict[str, Any]) -> List[CanonicalMessage]:
    out: List[CanonicalMessage] = []
    for i, entry in enumerate(bundle.get("entry") or []):
        resource = entry.get("resource") if isinstance(entry, dict) else None
        try:
            msg = resource_to_canonical(resource)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed bundle entry %d: %s", i, e)
            continue
        if msg is not None:
            out.append(msg)
    return out


def to_canonical(data: Any) -> List[CanonicalMessage]:
    """
    A single FHIR resource or a Bundle -> canonical messages.

    Bundles fan out one message per supported entry, in entry order.
    Unsupported resource types are skipped, never reported as errors.
    """
    if not isinstance(data, dict):
        return []
    if data.get("resourceType") == "Bundle":
        return _bundle_to_canonical(data)
    msg = resource_to_canonical(data)
    return [msg] if msg is not None else []
