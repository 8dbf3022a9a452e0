from __future__ import annotations
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

_ENVIRONMENTS = {"dev", "test", "prod"}
_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


@dataclass(frozen=True)
class GatewaySettings:
    webhook_secret: str  # "" disables the bearer check (dev only)
    environment: str  # dev/test/prod
    segmented_aliases: Tuple[str, ...]


@dataclass(frozen=True)
class DeepLinkSettings:
    scheme: str
    source: str
    web_base_url: Optional[str]


@dataclass(frozen=True)
class ReasoningSettings:
    llm_enabled: bool
    provider: str
    api_key: str
    model: str
    base_url: str
    timeout_s: int


@dataclass(frozen=True)
class AuditSettings:
    account: Optional[str]
    container: str


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_base_config(repo_root: Path) -> Dict[str, Any]:
    return load_yaml(repo_root / "configs" / "base.yaml")


def _env(environ: Mapping[str, str], name: Optional[str], default: str = "") -> str:
    if not name:
        return default
    return (environ.get(name, default) or "").strip()


def parse_bool(value: str, default: bool = False) -> bool:
    v = (value or "").strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    return default


def read_gateway_settings_from_env(
    base_cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> GatewaySettings:
    environ = os.environ if environ is None else environ
    gw = base_cfg["gateway"]
    env = _env(environ, gw["environment_env"], "dev")
    secret = _env(environ, gw["webhook_secret_env"])

    if env not in _ENVIRONMENTS:
        raise ValueError(f"ENV must be one of dev/test/prod (got '{env}')")
    if not secret and env != "dev":
        raise ValueError(f"Missing webhook secret env var: {gw['webhook_secret_env']}")

    aliases = gw.get("segmented_aliases") or []
    if not isinstance(aliases, list) or not all(isinstance(a, str) and a for a in aliases):
        raise ValueError("gateway.segmented_aliases must be a list of non-empty strings")

    return GatewaySettings(webhook_secret=secret, environment=env, segmented_aliases=tuple(aliases))


def read_deep_link_settings(
    base_cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> DeepLinkSettings:
    environ = os.environ if environ is None else environ
    dl = base_cfg.get("deep_links") or {}
    scheme = str(dl.get("scheme", "chart")).strip()
    if not scheme:
        raise ValueError("deep_links.scheme must not be empty")
    web_base = _env(environ, dl.get("web_base_url_env"))
    return DeepLinkSettings(
        scheme=scheme,
        source=str(dl.get("source", "ingest")).strip(),
        web_base_url=web_base.rstrip("/") or None,
    )


def read_reasoning_settings(
    base_cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> ReasoningSettings:
    environ = os.environ if environ is None else environ
    r = base_cfg.get("reasoning") or {}
    timeout = r.get("timeout_s", 10)
    if not isinstance(timeout, int) or timeout <= 0:
        raise ValueError(f"reasoning.timeout_s must be a positive integer (got {timeout!r})")

    return ReasoningSettings(
        llm_enabled=parse_bool(_env(environ, r.get("enabled_env", "AGENT_LLM_ENABLED"))),
        provider=_env(environ, r.get("provider_env", "LLM_PROVIDER"), "openai").lower(),
        api_key=_env(environ, r.get("api_key_env", "OPENAI_API_KEY")),
        model=_env(environ, r.get("model_env", "OPENAI_MODEL"), r.get("default_model", "gpt-4o-mini")),
        base_url=_env(environ, r.get("base_url_env", "OPENAI_BASE_URL"), "https://api.openai.com/v1").rstrip("/"),
        timeout_s=timeout,
    )


def read_audit_settings(
    base_cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> AuditSettings:
    environ = os.environ if environ is None else environ
    a = base_cfg.get("audit") or {}
    account = _env(environ, a.get("account_env", "DATALAKE_ACCOUNT"))
    container = _env(environ, a.get("container_env", "STORAGE_AUDIT_CONTAINER"), "audit") or "audit"
    return AuditSettings(account=account or None, container=container)
