from __future__ import annotations

import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import azure.functions as func
from jsonschema import Draft202012Validator

from cmi.agent.reasoning import LlmReasoner, Reasoner, ReasoningResult, escalation_result
from cmi.audit.sink import build_audit_sink
from cmi.common.config import (
    GatewaySettings,
    load_base_config,
    read_audit_settings,
    read_deep_link_settings,
    read_gateway_settings_from_env,
    read_reasoning_settings,
)
from cmi.common.contract import load_contract, validate_message
from cmi.common.errors import (
    IngestError,
    MethodNotAllowedError,
    NotFoundError,
    UnauthorizedError,
    UnrecognizedFormatError,
)
from cmi.common.model import UNKNOWN_MRN, CanonicalMessage, utc_now_iso
from cmi.delivery.deep_links import DeepLinkBuilder
from cmi.ingest import detect

logger = logging.getLogger(__name__)

ENDPOINTS = ["/ingest/auto", "/ingest/resource", "/ingest/segmented", "/ingest/health"]


class Channel(str, Enum):
    AUTO = "auto"
    RESOURCE = "resource"
    SEGMENTED = "segmented"


@dataclass(frozen=True)
class Collaborators:
    settings: GatewaySettings
    validator: Draft202012Validator
    reasoner: Callable[[CanonicalMessage], ReasoningResult]
    deep_links: Callable[[str], str]
    audit: Any  # .write(request_id, event)
    on_result: Optional[Callable[[ReasoningResult, CanonicalMessage], None]] = None


def build_collaborators(repo_root: Path, environ: Optional[Mapping[str, str]] = None) -> Collaborators:
    base = load_base_config(repo_root)
    return Collaborators(
        settings=read_gateway_settings_from_env(base, environ),
        validator=load_contract(repo_root),
        reasoner=Reasoner(primary=LlmReasoner(read_reasoning_settings(base, environ))),
        deep_links=DeepLinkBuilder.from_settings(read_deep_link_settings(base, environ)),
        audit=build_audit_sink(read_audit_settings(base, environ)),
    )


def _request_id(req: func.HttpRequest) -> str:
    rid = (req.headers.get("x-request-id") or "").strip()
    return rid if rid else uuid.uuid4().hex


def _json_response(status: int, body: Dict[str, Any]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(body, ensure_ascii=False),
        status_code=status,
        mimetype="application/json",
    )


def _error_response(e: IngestError, rid: str) -> func.HttpResponse:
    body: Dict[str, Any] = {"error": e.error, "message": e.message, "request_id": rid}
    if e.detail is not None:
        body["detail"] = e.detail
    if isinstance(e, (NotFoundError, UnrecognizedFormatError)):
        body["endpoints"] = ENDPOINTS
    return _json_response(e.http_status, body)


def _check_bearer(req: func.HttpRequest, settings: GatewaySettings) -> None:
    if not settings.webhook_secret:
        return
    header = (req.headers.get("authorization") or "").strip()
    token = header[len("Bearer "):].strip() if header[:7].lower() == "bearer " else ""
    if not token or not hmac.compare_digest(token.encode("utf-8"), settings.webhook_secret.encode("utf-8")):
        raise UnauthorizedError("Missing or invalid bearer token")


def _parse(channel: Channel, body: bytes, settings: GatewaySettings) -> List[CanonicalMessage]:
    if channel == Channel.RESOURCE:
        return detect.ingest_resource(body)
    if channel == Channel.SEGMENTED:
        return detect.ingest_segmented(body)
    return detect.ingest_auto(body, settings.segmented_aliases)


def process_message(message: CanonicalMessage, collab: Collaborators) -> Dict[str, Any]:
    """Attach the chart link, validate, reason, hand off. Returns the per-message result."""
    ext_id = message.patient.external_patient_id
    if not message.deep_link and ext_id and ext_id != UNKNOWN_MRN:
        message = message.with_deep_link(collab.deep_links(ext_id))

    validate_message(collab.validator, message.to_dict())

    result = collab.reasoner(message)
    if collab.on_result is not None:
        collab.on_result(result, message)

    return _result_entry(message, result)


def _result_entry(message: CanonicalMessage, result: ReasoningResult) -> Dict[str, Any]:
    return {
        "messageId": message.message_id,
        "action": result.action,
        "requiresReview": result.requires_review,
        "urgency": result.urgency.value,
        "responseText": result.response_text,
    }


def _process_isolated(message: CanonicalMessage, collab: Collaborators, rid: str) -> Dict[str, Any]:
    # A failing message becomes an escalation; its siblings still run.
    try:
        return process_message(message, collab)
    except Exception as e:
        code = e.code if isinstance(e, IngestError) else IngestError.code
        logger.exception("Message %s failed (request %s)", message.message_id, rid)
        entry = _result_entry(message, escalation_result(message, str(e)))
        entry["error"] = code
        return entry


def handle_health(req: func.HttpRequest) -> func.HttpResponse:
    return _json_response(200, {"status": "ok", "timestamp": utc_now_iso()})


def handle_not_found(req: func.HttpRequest) -> func.HttpResponse:
    rid = _request_id(req)
    return _error_response(NotFoundError(f"No route for {req.method} {req.url}"), rid)


def handle_startup_failure(req: func.HttpRequest, exc: Exception) -> func.HttpResponse:
    rid = _request_id(req)
    logger.error("Gateway configuration invalid: %s", exc)
    return _error_response(IngestError(str(exc), code="CONFIG_ERROR"), rid)


def handle_ingest(req: func.HttpRequest, channel: Channel, collab: Collaborators) -> func.HttpResponse:
    rid = _request_id(req)
    t0 = time.time()
    route = f"ingest/{channel.value}"

    def audit(status: str, **extra: Any) -> None:
        event = {
            "request_id": rid,
            "route": route,
            "status": status,
            "duration_ms": int((time.time() - t0) * 1000),
            "ts_utc": utc_now_iso(),
        }
        event.update(extra)
        collab.audit.write(rid, event)

    try:
        if (req.method or "").upper() != "POST":
            raise MethodNotAllowedError(f"{req.method} not allowed on /{route}; use POST")
        _check_bearer(req, collab.settings)

        messages = _parse(channel, req.get_body(), collab.settings)
        results = [_process_isolated(m, collab, rid) for m in messages]

        logger.info("Processed %d message(s) on %s (request %s)", len(results), route, rid)
        failed = sum(1 for r in results if "error" in r)
        audit("ok", count=len(results), failed=failed, message_ids=[r["messageId"] for r in results])
        return _json_response(
            200,
            {"status": "processed", "count": len(results), "results": results, "request_id": rid},
        )

    except UnauthorizedError as e:
        logger.warning("Unauthorized request rejected on %s (request %s)", route, rid)
        audit("unauthorized")
        return _error_response(e, rid)

    except IngestError as e:
        if e.http_status >= 500:
            logger.error("Ingestion failed on %s (request %s): %s", route, rid, e.message)
        else:
            logger.warning("Rejected request on %s (request %s): %s", route, rid, e.message)
        audit("error", code=e.code, message=e.message)
        return _error_response(e, rid)

    except Exception as e:
        logger.exception("Unexpected error on %s (request %s)", route, rid)
        audit("error", code=IngestError.code, message=str(e))
        return _error_response(IngestError(str(e)), rid)
