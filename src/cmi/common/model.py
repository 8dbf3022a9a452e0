from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Placeholder identity values. Downstream code detects them by exact match.
UNKNOWN_MRN = "UNKNOWN"
UNKNOWN_FIRST_NAME = "Unknown"
UNKNOWN_LAST_NAME = "Patient"
UNKNOWN_PROVIDER_NAME = "Unknown Provider"
UNKNOWN_PROVIDER_ROLE = "Unknown"


class MessageType(str, Enum):
    LAB_RESULT = "LAB_RESULT"
    LAB_ORDER_REQUEST = "LAB_ORDER_REQUEST"
    FOLLOW_UP_NEEDED = "FOLLOW_UP_NEEDED"
    SCHEDULE_STUDY = "SCHEDULE_STUDY"
    CALL_OFFICE = "CALL_OFFICE"
    MEDICATION_REFILL = "MEDICATION_REFILL"
    REFERRAL_REQUEST = "REFERRAL_REQUEST"
    CRITICAL_ALERT = "CRITICAL_ALERT"
    GENERAL_NOTIFICATION = "GENERAL_NOTIFICATION"


class Urgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"
    CRITICAL = "critical"


class LabFlag(str, Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_message_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class Patient:
    mrn: str
    first_name: str
    last_name: str
    dob: str = ""
    sex: str = ""
    external_patient_id: str = UNKNOWN_MRN

    @classmethod
    def unknown(cls) -> "Patient":
        return cls(
            mrn=UNKNOWN_MRN,
            first_name=UNKNOWN_FIRST_NAME,
            last_name=UNKNOWN_LAST_NAME,
            external_patient_id=UNKNOWN_MRN,
        )

    @classmethod
    def build(
        cls,
        *,
        mrn: Any,
        first_name: Any = "",
        last_name: Any = "",
        dob: Any = "",
        sex: Any = "",
        external_patient_id: Any = "",
    ) -> "Patient":
        """
        Present-vs-default construction: blank identity fields are replaced by
        the sentinel values instead of being left empty.
        """
        mrn_s = _clean(mrn) or UNKNOWN_MRN
        ext = _clean(external_patient_id) or (mrn_s if mrn_s != UNKNOWN_MRN else UNKNOWN_MRN)
        return cls(
            mrn=mrn_s,
            first_name=_clean(first_name) or UNKNOWN_FIRST_NAME,
            last_name=_clean(last_name) or UNKNOWN_LAST_NAME,
            dob=_clean(dob),
            sex=_clean(sex),
            external_patient_id=ext,
        )

    @property
    def is_placeholder(self) -> bool:
        return self.mrn == UNKNOWN_MRN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mrn": self.mrn,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "dob": self.dob,
            "sex": self.sex,
            "externalPatientId": self.external_patient_id,
        }


@dataclass(frozen=True)
class Provider:
    id: str
    name: str
    role: str

    @classmethod
    def unknown(cls) -> "Provider":
        return cls(id="", name=UNKNOWN_PROVIDER_NAME, role=UNKNOWN_PROVIDER_ROLE)

    @classmethod
    def build(cls, *, id: Any = "", name: Any = "", role: Any = "") -> "Provider":
        return cls(
            id=_clean(id),
            name=_clean(name) or UNKNOWN_PROVIDER_NAME,
            role=_clean(role) or UNKNOWN_PROVIDER_ROLE,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "role": self.role}


@dataclass(frozen=True)
class LabResult:
    test_name: str
    test_code: str
    value: str
    units: str
    reference_range: str
    flag: LabFlag
    collection_time: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testName": self.test_name,
            "testCode": self.test_code,
            "value": self.value,
            "units": self.units,
            "referenceRange": self.reference_range,
            "flag": self.flag.value,
            "collectionTime": self.collection_time,
        }


@dataclass(frozen=True)
class OrderDetails:
    order_id: str
    order_type: str
    order_description: str
    status: str
    priority: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderType": self.order_type,
            "orderDescription": self.order_description,
            "status": self.status,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class SchedulingInfo:
    study_type: str
    preferred_date: Optional[str] = None
    location: Optional[str] = None
    instructions: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"studyType": self.study_type}
        if self.preferred_date:
            out["preferredDate"] = self.preferred_date
        if self.location:
            out["location"] = self.location
        if self.instructions:
            out["instructions"] = self.instructions
        return out


@dataclass(frozen=True)
class Content:
    subject: str
    body: str
    urgency: Urgency
    lab_results: Tuple[LabResult, ...] = ()
    order_details: Optional[OrderDetails] = None
    scheduling_info: Optional[SchedulingInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "subject": self.subject,
            "body": self.body,
            "urgency": self.urgency.value,
        }
        if self.lab_results:
            out["labResults"] = [r.to_dict() for r in self.lab_results]
        if self.order_details is not None:
            out["orderDetails"] = self.order_details.to_dict()
        if self.scheduling_info is not None:
            out["schedulingInfo"] = self.scheduling_info.to_dict()
        return out


@dataclass(frozen=True)
class CanonicalMessage:
    message_id: str
    timestamp: str
    message_type: MessageType
    patient: Patient
    provider: Provider
    content: Content
    deep_link: Optional[str] = None

    @property
    def urgency(self) -> Urgency:
        return self.content.urgency

    def with_deep_link(self, link: str) -> "CanonicalMessage":
        return replace(self, deep_link=link)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "messageId": self.message_id,
            "timestamp": self.timestamp,
            "messageType": self.message_type.value,
            "patient": self.patient.to_dict(),
            "provider": self.provider.to_dict(),
            "content": self.content.to_dict(),
        }
        if self.deep_link:
            out["deepLink"] = self.deep_link
        return out
