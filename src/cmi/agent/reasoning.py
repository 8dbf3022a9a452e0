from __future__ import annotations

import json
import logging
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cmi.common.config import ReasoningSettings
from cmi.common.model import CanonicalMessage, LabFlag, MessageType, Urgency
from cmi.common.urgency import max_urgency

logger = logging.getLogger(__name__)

ACTIONS = (
    "ORDER_LAB",
    "SEND_FOLLOW_UP",
    "SCHEDULE_STUDY",
    "CALL_OFFICE",
    "MEDICATION_REFILL",
    "ACKNOWLEDGE",
    "ESCALATE",
    "NO_ACTION",
)

# JSON Schema for Structured Outputs (strict)
_RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "reasoning": {"type": "string"},
        "action": {"type": "string", "enum": list(ACTIONS)},
        "responseText": {"type": "string"},
        "requiresReview": {"type": "boolean"},
        "urgency": {"type": "string", "enum": [u.value for u in Urgency]},
    },
    "required": ["reasoning", "action", "responseText", "requiresReview", "urgency"],
}

_SYSTEM_INSTRUCTIONS = (
    "You triage inbound clinical messages on behalf of a physician. "
    "Return ONLY valid JSON matching the provided schema. "
    "Critical lab values are always escalated with urgency 'critical'. "
    "Never start or change a medication without physician review. "
    "Anything ambiguous requires review."
)

_ROUTINE_ACTIONS = {
    MessageType.LAB_ORDER_REQUEST: "ORDER_LAB",
    MessageType.FOLLOW_UP_NEEDED: "SEND_FOLLOW_UP",
    MessageType.SCHEDULE_STUDY: "SCHEDULE_STUDY",
    MessageType.CALL_OFFICE: "CALL_OFFICE",
    MessageType.MEDICATION_REFILL: "MEDICATION_REFILL",
}


@dataclass(frozen=True)
class ReasoningResult:
    reasoning: str
    action: str
    response_text: str
    requires_review: bool
    urgency: Urgency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reasoning": self.reasoning,
            "action": self.action,
            "responseText": self.response_text,
            "requiresReview": self.requires_review,
            "urgency": self.urgency.value,
        }


def escalation_result(message: CanonicalMessage, reason: str) -> ReasoningResult:
    """Used whenever a reasoning result cannot be trusted. Never below urgent."""
    return ReasoningResult(
        reasoning=reason,
        action="ESCALATE",
        response_text=f"Unable to process message {message.message_id} automatically. Escalating for physician review.",
        requires_review=True,
        urgency=max_urgency(Urgency.URGENT, message.urgency),
    )


def coerce_result(raw: Optional[Dict[str, Any]], message: CanonicalMessage) -> ReasoningResult:
    """
    Raw reasoning output -> ReasoningResult.

    Only `urgency` and `requiresReview` are checked; the rest is passed
    through. A critical message keeps critical urgency and review.
    """
    if not isinstance(raw, dict):
        return escalation_result(message, "No reasoning result")

    requires_review = raw.get("requiresReview")
    if not isinstance(requires_review, bool):
        return escalation_result(message, "Reasoning result missing requiresReview")
    try:
        urgency = Urgency(str(raw.get("urgency", "")).strip().lower())
    except ValueError:
        return escalation_result(message, "Reasoning result missing urgency")

    if message.urgency == Urgency.CRITICAL:
        urgency = Urgency.CRITICAL
        requires_review = True

    return ReasoningResult(
        reasoning=str(raw.get("reasoning") or ""),
        action=str(raw.get("action") or "NO_ACTION"),
        response_text=str(raw.get("responseText") or ""),
        requires_review=requires_review,
        urgency=urgency,
    )


def _fmt_lab_results(message: CanonicalMessage) -> str:
    results = message.content.lab_results
    if not results:
        return ""
    lines = ["LAB RESULTS:"]
    for r in results:
        lines.append(
            f"  - {r.test_name} ({r.test_code}): {r.value} {r.units} "
            f"[Ref: {r.reference_range}] Flag: {r.flag.value} | Collected: {r.collection_time}"
        )
    return "\n".join(lines)


def build_prompt(message: CanonicalMessage) -> str:
    p = message.patient
    pr = message.provider
    c = message.content

    sections = [
        "INCOMING CLINICAL MESSAGE:",
        f"Message Type: {message.message_type.value}\nTimestamp: {message.timestamp}\nMessage ID: {message.message_id}",
        f"PATIENT:\n  MRN: {p.mrn}\n  Name: {p.last_name}, {p.first_name}\n  DOB: {p.dob}\n  Sex: {p.sex}",
        f"PROVIDER:\n  Name: {pr.name}\n  ID: {pr.id}\n  Role: {pr.role}",
        f"CONTENT:\n  Subject: {c.subject}\n  Body: {c.body}\n  Urgency: {c.urgency.value}",
    ]
    labs = _fmt_lab_results(message)
    if labs:
        sections.append(labs)
    if c.order_details is not None:
        o = c.order_details
        sections.append(
            f"ORDER DETAILS:\n  Order ID: {o.order_id}\n  Type: {o.order_type}\n"
            f"  Description: {o.order_description}\n  Status: {o.status}\n  Priority: {o.priority}"
        )
    if c.scheduling_info is not None:
        s = c.scheduling_info
        sections.append(
            f"SCHEDULING INFO:\n  Study Type: {s.study_type}\n"
            f"  Preferred Date: {s.preferred_date or 'Not specified'}\n"
            f"  Location: {s.location or 'Not specified'}\n  Instructions: {s.instructions or 'None'}"
        )
    sections.append(f"CHART LINK: {message.deep_link or 'Not available'}")
    return "\n\n".join(sections)


class RuleBasedReasoner:
    """Deterministic triage. Never acts autonomously on anything but normal labs."""

    def reason(self, message: CanonicalMessage) -> Dict[str, Any]:
        flags = {r.flag for r in message.content.lab_results}
        who = f"{message.patient.last_name}, {message.patient.first_name} (MRN {message.patient.mrn})"

        if (
            LabFlag.CRITICAL in flags
            or message.urgency == Urgency.CRITICAL
            or message.message_type == MessageType.CRITICAL_ALERT
        ):
            return {
                "reasoning": "Critical value or critical alert; immediate physician escalation.",
                "action": "ESCALATE",
                "responseText": f"CRITICAL: {message.content.subject} for {who}. Physician review required now.",
                "requiresReview": True,
                "urgency": Urgency.CRITICAL.value,
            }

        if message.message_type == MessageType.LAB_RESULT:
            if LabFlag.ABNORMAL in flags:
                return {
                    "reasoning": "Abnormal, non-critical result; flagged for physician review.",
                    "action": "ESCALATE",
                    "responseText": f"Abnormal result: {message.content.subject} for {who}.",
                    "requiresReview": True,
                    "urgency": max_urgency(Urgency.URGENT, message.urgency).value,
                }
            if flags == {LabFlag.NORMAL}:
                return {
                    "reasoning": "All results within normal limits.",
                    "action": "ACKNOWLEDGE",
                    "responseText": f"Normal result acknowledged: {message.content.subject} for {who}.",
                    "requiresReview": False,
                    "urgency": message.urgency.value,
                }

        return {
            "reasoning": "No automatic rule applies; queued for physician review.",
            "action": _ROUTINE_ACTIONS.get(message.message_type, "NO_ACTION"),
            "responseText": f"{message.content.subject} for {who} needs review.",
            "requiresReview": True,
            "urgency": message.urgency.value,
        }


def _extract_output_text(resp_json: Dict[str, Any]) -> str:
    """
    OpenAI Responses API returns output as an array of items.
    We extract the first assistant message output_text.
    """
    out = resp_json.get("output")
    if not isinstance(out, list):
        return ""

    for item in out:
        if not isinstance(item, dict):
            continue
        if item.get("type") != "message":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for c in content:
            if isinstance(c, dict) and c.get("type") == "output_text":
                t = c.get("text")
                return t if isinstance(t, str) else ""
    return ""


class LlmReasoner:
    def __init__(self, settings: ReasoningSettings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        s = self.settings
        return s.llm_enabled and s.provider == "openai" and bool(s.api_key) and bool(s.model)

    def reason(self, message: CanonicalMessage) -> Optional[Dict[str, Any]]:
        """
        Returns the raw result dict, or None (so caller can fall back to
        deterministic rules).
        """
        if not self.enabled:
            return None

        s = self.settings
        prompt = build_prompt(message)
        if len(prompt) > 8000:
            prompt = prompt[:8000]

        req_body: Dict[str, Any] = {
            "model": s.model,
            "temperature": 0,
            "max_output_tokens": 600,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": _SYSTEM_INSTRUCTIONS}],
                },
                {"role": "user", "content": [{"type": "input_text", "text": prompt}]},
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "triage_result",
                    "schema": _RESULT_SCHEMA,
                    "strict": True,
                }
            },
        }

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {s.api_key}",
        }

        try:
            data = json.dumps(req_body).encode("utf-8")
            request = urllib.request.Request(f"{s.base_url}/responses", data=data, headers=headers, method="POST")
            with urllib.request.urlopen(request, timeout=s.timeout_s) as resp:
                raw = resp.read()
            resp_json = json.loads(raw.decode("utf-8"))

            text = _extract_output_text(resp_json).strip()
            if not text:
                return None

            obj = json.loads(text)
            if not isinstance(obj, dict) or obj.get("action") not in ACTIONS:
                return None
            return obj

        except Exception as e:
            logger.warning("LLM reasoning failed for %s, falling back to rules: %s", message.message_id, e)
            return None


class Reasoner:
    """Primary (LLM) reasoner with deterministic fallback; always yields a usable result."""

    def __init__(self, primary: Optional[LlmReasoner] = None, fallback: Optional[RuleBasedReasoner] = None):
        self.primary = primary
        self.fallback = fallback or RuleBasedReasoner()

    def __call__(self, message: CanonicalMessage) -> ReasoningResult:
        raw = self.primary.reason(message) if self.primary is not None else None
        if raw is None:
            raw = self.fallback.reason(message)
        return coerce_result(raw, message)
