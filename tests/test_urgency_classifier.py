import pytest

from cmi.common.model import (
    CanonicalMessage,
    Content,
    LabFlag,
    LabResult,
    MessageType,
    Patient,
    Provider,
    Urgency,
)
from cmi.common.urgency import (
    classify_urgency,
    enforce_critical,
    max_urgency,
    most_severe_flag,
    normalize_flag,
    urgency_from_priority,
)


@pytest.mark.parametrize("code", ["HH", "LL", "AA", "CC", "C", "critical", " hh "])
def test_critical_codes(code):
    assert normalize_flag(code) == LabFlag.CRITICAL


@pytest.mark.parametrize("code", ["H", "L", "A", "HU", "LU", "abnormal"])
def test_abnormal_codes(code):
    assert normalize_flag(code) == LabFlag.ABNORMAL


@pytest.mark.parametrize("code", ["", None, "N", "normal"])
def test_blank_and_normal_codes(code):
    assert normalize_flag(code) == LabFlag.NORMAL


def test_unknown_code_is_not_normal():
    assert normalize_flag("XYZ") == LabFlag.UNKNOWN


@pytest.mark.parametrize(
    "token, expected",
    [
        ("S", Urgency.STAT),
        ("stat", Urgency.STAT),
        ("A", Urgency.URGENT),
        ("ASAP", Urgency.URGENT),
        ("urgent", Urgency.URGENT),
        ("emergent", Urgency.CRITICAL),
        ("R", Urgency.ROUTINE),
        ("", Urgency.ROUTINE),
        (None, Urgency.ROUTINE),
    ],
)
def test_priority_tokens(token, expected):
    assert urgency_from_priority(token) == expected


def test_ordering():
    assert max_urgency() == Urgency.ROUTINE
    assert max_urgency(Urgency.STAT, Urgency.URGENT) == Urgency.STAT
    assert max_urgency(Urgency.URGENT, Urgency.CRITICAL, Urgency.ROUTINE) == Urgency.CRITICAL


def test_single_critical_flag_forces_critical_over_any_priority():
    flags = [LabFlag.NORMAL, LabFlag.ABNORMAL, LabFlag.CRITICAL]
    assert classify_urgency(flags) == Urgency.CRITICAL
    assert classify_urgency(flags, "R") == Urgency.CRITICAL
    assert classify_urgency([LabFlag.CRITICAL], "S") == Urgency.CRITICAL


def test_priority_applies_without_critical_flag():
    assert classify_urgency([LabFlag.NORMAL], "S") == Urgency.STAT
    assert classify_urgency([LabFlag.ABNORMAL], "A") == Urgency.URGENT
    assert classify_urgency([]) == Urgency.ROUTINE


def test_abnormal_as_urgent_never_lowers_priority():
    assert classify_urgency([LabFlag.ABNORMAL], abnormal_as_urgent=True) == Urgency.URGENT
    assert classify_urgency([LabFlag.ABNORMAL], "stat", abnormal_as_urgent=True) == Urgency.STAT
    assert classify_urgency([LabFlag.ABNORMAL]) == Urgency.ROUTINE


def _message(urgency, flag):
    return CanonicalMessage(
        message_id="M1",
        timestamp="2025-01-31T12:00:00",
        message_type=MessageType.LAB_RESULT,
        patient=Patient.unknown(),
        provider=Provider.unknown(),
        content=Content(
            subject="Lab Result: Potassium",
            body="",
            urgency=urgency,
            lab_results=(LabResult("Potassium", "2823-3", "7.1", "mEq/L", "3.5-5 mEq/L", flag, ""),),
        ),
    )


def test_enforce_critical_raises_urgency():
    msg = enforce_critical(_message(Urgency.ROUTINE, LabFlag.CRITICAL))
    assert msg.urgency == Urgency.CRITICAL


def test_enforce_critical_leaves_non_critical_alone():
    original = _message(Urgency.STAT, LabFlag.ABNORMAL)
    assert enforce_critical(original) is original


def test_most_severe_flag():
    assert most_severe_flag([LabFlag.ABNORMAL, LabFlag.CRITICAL, LabFlag.NORMAL]) == LabFlag.CRITICAL
    assert most_severe_flag([LabFlag.NORMAL, LabFlag.UNKNOWN]) == LabFlag.UNKNOWN
    assert most_severe_flag([]) == LabFlag.NORMAL
