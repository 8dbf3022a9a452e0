import pytest

from cmi.common.model import UNKNOWN_MRN, LabFlag, MessageType, Urgency
from cmi.ingest.flat.payload_to_canonical import canonical_from_dict, flat_to_canonical, normalize_message_type


def test_snake_case_payload():
    msg = flat_to_canonical(
        {
            "message_id": "WKT-1",
            "message_type": "lab_result",
            "patient_mrn": "E123",
            "patient_first_name": "Ana",
            "patient_last_name": "Ruiz",
            "provider_name": "Dr. Lee",
            "subject": "Glucose",
            "body": "Glucose 180 mg/dL",
            "urgency": "stat",
        }
    )

    assert msg.message_id == "WKT-1"
    assert msg.message_type == MessageType.LAB_RESULT
    assert msg.patient.mrn == "E123"
    assert msg.patient.external_patient_id == "E123"
    assert msg.patient.first_name == "Ana"
    assert msg.provider.name == "Dr. Lee"
    assert msg.content.urgency == Urgency.STAT


def test_camel_case_payload_with_priority_and_message():
    msg = flat_to_canonical({"patientMrn": "E9", "messageType": "refill", "priority": "ASAP", "message": "Needs refill"})

    assert msg.patient.mrn == "E9"
    assert msg.message_type == MessageType.MEDICATION_REFILL
    assert msg.content.urgency == Urgency.URGENT
    assert msg.content.body == "Needs refill"
    assert msg.content.subject == "Clinical Message"
    assert msg.message_id.startswith("FLAT-")


def test_defaults_are_sentinels():
    msg = flat_to_canonical({"patient_mrn": "E1"})

    assert msg.patient.first_name == "Unknown"
    assert msg.patient.last_name == "Patient"
    assert msg.provider.name == "Unknown Provider"
    assert msg.provider.role == "Unknown"
    assert msg.message_type == MessageType.GENERAL_NOTIFICATION
    assert msg.content.urgency == Urgency.ROUTINE


@pytest.mark.parametrize(
    "alias, expected",
    [
        ("ORU", MessageType.LAB_RESULT),
        ("lab_order", MessageType.LAB_ORDER_REQUEST),
        ("SIU", MessageType.SCHEDULE_STUDY),
        ("call", MessageType.CALL_OFFICE),
        ("referral", MessageType.REFERRAL_REQUEST),
        ("critical", MessageType.CRITICAL_ALERT),
        ("CRITICAL_ALERT", MessageType.CRITICAL_ALERT),
        ("something_else", MessageType.GENERAL_NOTIFICATION),
        (None, MessageType.GENERAL_NOTIFICATION),
    ],
)
def test_message_type_aliases(alias, expected):
    assert normalize_message_type(alias) == expected


def test_canonical_pass_through_keeps_fields():
    data = {
        "messageId": "CAN-1",
        "timestamp": "2025-01-31T12:00:00Z",
        "messageType": "LAB_RESULT",
        "patient": {"mrn": "E5", "firstName": "Lee", "lastName": "Park", "dob": "1980-01-01", "sex": "M", "externalPatientId": "X5"},
        "provider": {"id": "p1", "name": "Dr. Kim", "role": "PCP"},
        "content": {
            "subject": "Lab Result: Potassium",
            "body": "K 7.1",
            "urgency": "routine",
            "labResults": [
                {
                    "testName": "Potassium",
                    "testCode": "2823-3",
                    "value": "7.1",
                    "units": "mEq/L",
                    "referenceRange": "3.5-5 mEq/L",
                    "flag": "critical",
                    "collectionTime": "",
                }
            ],
        },
    }
    msg = canonical_from_dict(data)

    assert msg.message_id == "CAN-1"
    assert msg.patient.external_patient_id == "X5"
    assert msg.content.lab_results[0].flag == LabFlag.CRITICAL
    # critical flag wins over the declared urgency
    assert msg.content.urgency == Urgency.CRITICAL
    assert msg.to_dict()["patient"] == data["patient"]


def test_pass_through_tolerates_missing_identity():
    msg = canonical_from_dict({"messageId": "CAN-2", "patient": {}, "content": {"urgency": "bogus"}})

    assert msg.patient.mrn == UNKNOWN_MRN
    assert msg.message_type == MessageType.GENERAL_NOTIFICATION
    assert msg.content.urgency == Urgency.ROUTINE


def test_pass_through_generates_blank_message_id():
    msg = canonical_from_dict({"messageId": "  ", "patient": {"mrn": "E1"}, "content": {}})

    assert msg.message_id.startswith("MSG-")
