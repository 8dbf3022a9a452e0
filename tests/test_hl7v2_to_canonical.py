from pathlib import Path

from cmi.common.contract import load_contract, validate_message
from cmi.common.model import UNKNOWN_MRN, LabFlag, MessageType, Urgency
from cmi.ingest.hl7v2.message_to_canonical import format_hl7_timestamp, parse_segments, to_canonical

CRITICAL_POTASSIUM = "\r".join(
    [
        "MSH|^~\\&|LAB|MAIN|INGEST|CLINIC|20250131120000||ORU^R01|MSG00042|P|2.5.1",
        "PID|||E7891234^^^MRN||Santos^Maria||19670315|F",
        "ORC|RE|ORD5566||||||||||1234567^Chen^David^^^Dr.",
        "OBR|1|ORD5566||BMP^Basic Metabolic Panel|||20250131103000||||||||||||||||||||S",
        "OBX|1|NM|2823-3^Potassium||7.1|mEq/L|3.5-5.0|HH|||F|||20250131103000",
        "OBX|2|NM|2951-2^Sodium||139|mmol/L|135-145|N|||F|||20250131103000",
    ]
)


def test_critical_potassium_is_critical():
    msg = to_canonical(CRITICAL_POTASSIUM)

    assert msg.message_type == MessageType.LAB_RESULT
    assert msg.content.lab_results[0].flag == LabFlag.CRITICAL
    assert msg.content.lab_results[0].value == "7.1"
    assert msg.content.urgency == Urgency.CRITICAL


def test_header_patient_and_provider_fields():
    msg = to_canonical(CRITICAL_POTASSIUM)

    assert msg.message_id == "MSG00042"
    assert msg.timestamp == "2025-01-31T12:00:00"
    assert msg.patient.mrn == "E7891234"
    assert msg.patient.external_patient_id == "E7891234"
    assert msg.patient.last_name == "Santos"
    assert msg.patient.first_name == "Maria"
    assert msg.patient.dob == "1967-03-15"
    assert msg.patient.sex == "F"
    assert msg.provider.id == "1234567"
    assert msg.provider.name == "Dr. David Chen"
    assert msg.content.subject == "Lab Result: Basic Metabolic Panel"
    assert msg.content.body == CRITICAL_POTASSIUM


def test_lab_result_fields():
    k, na = to_canonical(CRITICAL_POTASSIUM).content.lab_results

    assert k.test_name == "Potassium"
    assert k.test_code == "2823-3"
    assert k.units == "mEq/L"
    assert k.reference_range == "3.5-5 mEq/L"
    assert k.collection_time == "2025-01-31T10:30:00"
    assert na.flag == LabFlag.NORMAL
    assert na.reference_range == "135-145 mmol/L"


def test_order_details_from_orc_and_obr():
    order = to_canonical(CRITICAL_POTASSIUM).content.order_details

    assert order.order_id == "ORD5566"
    assert order.order_type == "BMP"
    assert order.order_description == "Basic Metabolic Panel"
    assert order.priority == "S"


def test_stat_priority_without_critical_flag():
    raw = CRITICAL_POTASSIUM.replace("|7.1|mEq/L|3.5-5.0|HH|", "|4.2|mEq/L|3.5-5.0||")
    msg = to_canonical(raw)

    assert msg.content.lab_results[0].flag == LabFlag.NORMAL
    assert msg.content.urgency == Urgency.STAT


def test_abnormal_flag_alone_stays_routine():
    raw = "\n".join(
        [
            "MSH|^~\\&|LAB|MAIN|INGEST|CLINIC|20250131||ORU^R01|M2|P|2.5.1",
            "PID|||P100||Doe^Jane",
            "OBX|1|NM|2345-7^Glucose||180|mg/dL|70-99|H|||F",
        ]
    )
    msg = to_canonical(raw)

    assert msg.content.lab_results[0].flag == LabFlag.ABNORMAL
    assert msg.content.urgency == Urgency.ROUTINE
    assert msg.content.order_details is None


def test_repeated_abnormal_flags_keep_most_severe():
    raw = "\r".join(
        [
            "MSH|^~\\&|LAB|MAIN|INGEST|CLINIC|20250131||ORU^R01|M9|P|2.5.1",
            "PID|||E1||Doe^Jane",
            "OBX|1|NM|2823-3^Potassium||7.1|mEq/L|3.5-5.0|H~HH|||F",
        ]
    )
    msg = to_canonical(raw)

    assert msg.content.lab_results[0].flag == LabFlag.CRITICAL
    assert msg.content.urgency == Urgency.CRITICAL


def test_missing_patient_segment_yields_sentinels():
    raw = "MSH|^~\\&|A|B|C|D|20250131120000||ORM^O01|M3|P|2.5.1\rOBR|1|O1||CBC^Complete Blood Count"
    msg = to_canonical(raw)

    assert msg.patient.mrn == UNKNOWN_MRN
    assert msg.patient.is_placeholder
    assert msg.message_type == MessageType.LAB_ORDER_REQUEST
    assert msg.provider.name == "Unknown Provider"


def test_empty_input_never_raises():
    for raw in ("", None, b"", "garbage without segments"):
        msg = to_canonical(raw)
        assert msg.patient.mrn == UNKNOWN_MRN
        assert msg.message_type == MessageType.GENERAL_NOTIFICATION
        assert msg.message_id.startswith("MSG-")
        assert msg.content.urgency == Urgency.ROUTINE


def test_unmapped_message_type_is_general_notification():
    msg = to_canonical("MSH|^~\\&|A|B|C|D|20250131||ADT^A01|M4|P|2.5.1\rPID|||P1||Roe^Rick")
    assert msg.message_type == MessageType.GENERAL_NOTIFICATION
    assert msg.content.subject == "Clinical Message: ADT^A01"


def test_custom_delimiters_and_escapes():
    raw = "MSH#*~\\&#A#B#C#D#20250131##ORU*R01#M5#P#2.5.1\rPID###P7##O\\S\\Brien*Pat\rOBX#1#ST#X1*Note##a\\F\\b"
    parsed = parse_segments(raw)
    msg = to_canonical(raw)

    assert parsed.delimiters.field == "#"
    assert parsed.message_type == "ORU^R01"
    assert msg.patient.last_name == "O*Brien"
    assert msg.content.lab_results[0].value == "a#b"


def test_timestamp_padding():
    assert format_hl7_timestamp("20250131120000") == "2025-01-31T12:00:00"
    assert format_hl7_timestamp("202501311200") == "2025-01-31T12:00:00"
    assert format_hl7_timestamp("20250131") == "2025-01-31T00:00:00"
    assert format_hl7_timestamp("2025") == "2025-01-01T00:00:00"
    assert format_hl7_timestamp("20250131120000.123-0500") == "2025-01-31T12:00:00"
    assert format_hl7_timestamp("") == ""
    assert format_hl7_timestamp("not-a-date") == "not-a-date"


def test_canonical_output_satisfies_contract():
    repo_root = Path(__file__).resolve().parents[1]
    v = load_contract(repo_root)

    validate_message(v, to_canonical(CRITICAL_POTASSIUM).to_dict())
    validate_message(v, to_canonical("").to_dict())
