from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cmi.common.contract import looks_canonical
from cmi.common.errors import PayloadDecodeError, UnrecognizedFormatError
from cmi.common.model import CanonicalMessage
from cmi.ingest.fhir import resource_to_canonical as fhir
from cmi.ingest.flat import payload_to_canonical as flat
from cmi.ingest.hl7v2 import message_to_canonical as hl7v2

DEFAULT_SEGMENTED_ALIASES: Tuple[str, ...] = ("hl7_raw", "hl7Raw", "raw_hl7", "hl7", "hl7_message")


class PayloadFormat(str, Enum):
    STRUCTURED_RESOURCE = "structured_resource"
    SEGMENTED = "segmented"
    CANONICAL = "canonical"
    FLAT = "flat"


def decode_text(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    try:
        return bytes(body).decode("utf-8")
    except UnicodeDecodeError as e:
        raise PayloadDecodeError(f"Body is not valid UTF-8: {e}") from e


def decode_json(body: Any) -> Any:
    text = decode_text(body)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise PayloadDecodeError(f"Body is not valid JSON: {e.msg} (line {e.lineno}, column {e.colno})") from e


def _embedded_segmented(data: Dict[str, Any], aliases: Sequence[str]) -> Optional[str]:
    for key in aliases:
        v = data.get(key)
        if isinstance(v, str) and v.strip():
            return v
    return None


def detect_format(
    data: Dict[str, Any], segmented_aliases: Sequence[str] = DEFAULT_SEGMENTED_ALIASES
) -> Optional[PayloadFormat]:
    """First matching signature wins; None when nothing matches."""
    if data.get("resourceType"):
        return PayloadFormat.STRUCTURED_RESOURCE
    if _embedded_segmented(data, segmented_aliases) is not None:
        return PayloadFormat.SEGMENTED
    if looks_canonical(data):
        return PayloadFormat.CANONICAL
    if flat.is_flat_payload(data):
        return PayloadFormat.FLAT
    return None


def ingest_resource(body: Any) -> List[CanonicalMessage]:
    return fhir.to_canonical(decode_json(body))


def ingest_segmented(body: Any) -> List[CanonicalMessage]:
    return [hl7v2.to_canonical(decode_text(body))]


def ingest_auto(
    body: Any, segmented_aliases: Sequence[str] = DEFAULT_SEGMENTED_ALIASES
) -> List[CanonicalMessage]:
    text = decode_text(body)
    if text.lstrip().startswith("MSH"):
        return [hl7v2.to_canonical(text)]

    data = decode_json(text)
    if not isinstance(data, dict):
        raise UnrecognizedFormatError("Expected a JSON object")

    fmt = detect_format(data, segmented_aliases)
    if fmt == PayloadFormat.STRUCTURED_RESOURCE:
        return fhir.to_canonical(data)
    if fmt == PayloadFormat.SEGMENTED:
        return [hl7v2.to_canonical(_embedded_segmented(data, segmented_aliases))]
    if fmt == PayloadFormat.CANONICAL:
        return [flat.canonical_from_dict(data)]
    if fmt == PayloadFormat.FLAT:
        return [flat.flat_to_canonical(data)]
    raise UnrecognizedFormatError(
        "Unrecognized payload format. Expected a structured resource, segmented text, "
        "a canonical message, or a flat payload with patient_mrn."
    )
