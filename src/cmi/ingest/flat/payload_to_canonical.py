from __future__ import annotations

from typing import Any, Dict, Optional

from cmi.common.model import (
    UNKNOWN_MRN,
    CanonicalMessage,
    Content,
    LabFlag,
    LabResult,
    MessageType,
    OrderDetails,
    Patient,
    Provider,
    SchedulingInfo,
    Urgency,
    new_message_id,
    utc_now_iso,
)
from cmi.common.urgency import enforce_critical, normalize_flag, urgency_from_priority

# Middleware recipes (jq transforms and the like) emit either snake_case or camelCase keys.
MESSAGE_TYPE_ALIASES: Dict[str, MessageType] = {
    "lab_result": MessageType.LAB_RESULT,
    "oru": MessageType.LAB_RESULT,
    "lab_order": MessageType.LAB_ORDER_REQUEST,
    "lab_order_request": MessageType.LAB_ORDER_REQUEST,
    "orm": MessageType.LAB_ORDER_REQUEST,
    "follow_up": MessageType.FOLLOW_UP_NEEDED,
    "follow_up_needed": MessageType.FOLLOW_UP_NEEDED,
    "schedule": MessageType.SCHEDULE_STUDY,
    "schedule_study": MessageType.SCHEDULE_STUDY,
    "siu": MessageType.SCHEDULE_STUDY,
    "call": MessageType.CALL_OFFICE,
    "call_office": MessageType.CALL_OFFICE,
    "refill": MessageType.MEDICATION_REFILL,
    "medication_refill": MessageType.MEDICATION_REFILL,
    "rde": MessageType.MEDICATION_REFILL,
    "referral": MessageType.REFERRAL_REQUEST,
    "referral_request": MessageType.REFERRAL_REQUEST,
    "critical": MessageType.CRITICAL_ALERT,
    "critical_alert": MessageType.CRITICAL_ALERT,
    "general_notification": MessageType.GENERAL_NOTIFICATION,
}


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        v = data.get(k)
        if v is not None and v != "":
            return v
    return default


def _s(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def normalize_message_type(value: Any) -> MessageType:
    key = _s(value).lower()
    return MESSAGE_TYPE_ALIASES.get(key, MessageType.GENERAL_NOTIFICATION)


def is_flat_payload(data: Dict[str, Any]) -> bool:
    return bool(_pick(data, "patient_mrn", "patientMrn"))


def flat_to_canonical(data: Dict[str, Any]) -> CanonicalMessage:
    """
    Flat middleware payload (patient_mrn / patientMrn style) -> canonical message.

    Unknown message types become GENERAL_NOTIFICATION; unknown urgency tokens
    become routine.
    """
    mrn = _pick(data, "patient_mrn", "patientMrn")
    message = CanonicalMessage(
        message_id=_s(_pick(data, "message_id", "messageId")) or new_message_id("FLAT"),
        timestamp=_s(_pick(data, "timestamp")) or utc_now_iso(),
        message_type=normalize_message_type(_pick(data, "message_type", "messageType")),
        patient=Patient.build(
            mrn=mrn,
            first_name=_pick(data, "patient_first_name", "patientFirstName"),
            last_name=_pick(data, "patient_last_name", "patientLastName"),
            dob=_pick(data, "patient_dob", "patientDob"),
            sex=_pick(data, "patient_sex", "patientSex"),
            external_patient_id=_pick(data, "external_patient_id", "externalPatientId", default=mrn),
        ),
        provider=Provider.build(
            id=_pick(data, "provider_id", "providerId", "provider_npi", "providerNpi"),
            name=_pick(data, "provider_name", "providerName"),
            role=_pick(data, "provider_role", "providerRole"),
        ),
        content=Content(
            subject=_s(_pick(data, "subject")) or "Clinical Message",
            body=_s(_pick(data, "body", "message")),
            urgency=urgency_from_priority(_s(_pick(data, "urgency", "priority"))),
        ),
    )
    return enforce_critical(message)


def _dict(v: Any) -> Dict[str, Any]:
    return v if isinstance(v, dict) else {}


def _message_type(value: Any) -> MessageType:
    try:
        return MessageType(_s(value))
    except ValueError:
        return normalize_message_type(value)


def _urgency(value: Any) -> Urgency:
    try:
        return Urgency(_s(value).lower())
    except ValueError:
        return urgency_from_priority(_s(value))


def _flag(value: Any) -> LabFlag:
    try:
        return LabFlag(_s(value).lower())
    except ValueError:
        return normalize_flag(_s(value))


def _lab_result(r: Dict[str, Any]) -> LabResult:
    return LabResult(
        test_name=_s(r.get("testName")),
        test_code=_s(r.get("testCode")),
        value=_s(r.get("value")),
        units=_s(r.get("units")),
        reference_range=_s(r.get("referenceRange")),
        flag=_flag(r.get("flag")),
        collection_time=_s(r.get("collectionTime")),
    )


def _order_details(o: Dict[str, Any]) -> Optional[OrderDetails]:
    if not o:
        return None
    return OrderDetails(
        order_id=_s(o.get("orderId")),
        order_type=_s(o.get("orderType")),
        order_description=_s(o.get("orderDescription")),
        status=_s(o.get("status")),
        priority=_s(o.get("priority")) or "routine",
    )


def _scheduling_info(s: Dict[str, Any]) -> Optional[SchedulingInfo]:
    if not s:
        return None
    return SchedulingInfo(
        study_type=_s(s.get("studyType")),
        preferred_date=_s(s.get("preferredDate")) or None,
        location=_s(s.get("location")) or None,
        instructions=_s(s.get("instructions")) or None,
    )


def canonical_from_dict(data: Dict[str, Any]) -> CanonicalMessage:
    """Already-canonical JSON (camelCase wire form) -> CanonicalMessage."""
    patient = _dict(data.get("patient"))
    provider = _dict(data.get("provider"))
    content = _dict(data.get("content"))
    mrn = patient.get("mrn") or UNKNOWN_MRN

    message = CanonicalMessage(
        message_id=_s(data.get("messageId")) or new_message_id("MSG"),
        timestamp=_s(data.get("timestamp")) or utc_now_iso(),
        message_type=_message_type(data.get("messageType")),
        patient=Patient.build(
            mrn=mrn,
            first_name=patient.get("firstName"),
            last_name=patient.get("lastName"),
            dob=patient.get("dob"),
            sex=patient.get("sex"),
            external_patient_id=patient.get("externalPatientId") or mrn,
        ),
        provider=Provider.build(
            id=provider.get("id"),
            name=provider.get("name"),
            role=provider.get("role"),
        ),
        content=Content(
            subject=_s(content.get("subject")),
            body=_s(content.get("body")),
            urgency=_urgency(content.get("urgency")),
            lab_results=tuple(_lab_result(r) for r in content.get("labResults") or [] if isinstance(r, dict)),
            order_details=_order_details(_dict(content.get("orderDetails"))),
            scheduling_info=_scheduling_info(_dict(content.get("schedulingInfo"))),
        ),
        deep_link=_s(data.get("deepLink")) or None,
    )
    return enforce_critical(message)
