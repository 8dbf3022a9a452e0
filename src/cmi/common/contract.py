from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from jsonschema import Draft202012Validator

from cmi.common.errors import ContractViolationError


def load_contract(repo_root: Path) -> Draft202012Validator:
    contract_path = repo_root / "contracts" / "canonical" / "canonical_message.v1.json"
    schema = json.loads(contract_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def validate_message(validator: Draft202012Validator, message: Dict[str, Any]) -> None:
    errors = sorted(validator.iter_errors(message), key=lambda e: list(e.path))
    if errors:
        msg_lines = ["Canonical message failed validation:"]
        for e in errors[:10]:
            loc = ".".join([str(p) for p in e.path]) or "<root>"
            msg_lines.append(f"- {loc}: {e.message}")
        raise ContractViolationError(
            "\n".join(msg_lines),
            detail={"message_id": message.get("messageId")},
        )


def looks_canonical(payload: Dict[str, Any]) -> bool:
    """Structural match only: the three top-level fields every canonical message carries.

    A blank messageId still matches; the pass-through generates one.
    """
    return (
        "messageId" in payload
        and isinstance(payload.get("patient"), dict)
        and isinstance(payload.get("content"), dict)
    )
