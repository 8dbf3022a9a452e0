from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cmi.common.config import AuditSettings

logger = logging.getLogger(__name__)


def _utc_path_date() -> str:
    now = datetime.now(timezone.utc)
    return f"{now.year:04d}/{now.month:02d}/{now.day:02d}"


def _datalake_client(account: str):
    from azure.identity import DefaultAzureCredential
    from azure.storage.filedatalake import DataLakeServiceClient

    url = f"https://{account}.dfs.core.windows.net"
    return DataLakeServiceClient(account_url=url, credential=DefaultAzureCredential())


class NullAuditSink:
    def write(self, request_id: str, event: Dict[str, Any]) -> Optional[str]:
        return None


class DataLakeAuditSink:
    """
    One JSON document per request under `ingest/audit/YYYY/MM/DD/<request_id>.json`.

    Best-effort: a failed write is logged and never affects the response.
    """

    def __init__(self, dl, container: str):
        self.dl = dl
        self.container = container

    def write(self, request_id: str, event: Dict[str, Any]) -> Optional[str]:
        if not (self.dl and self.container and request_id):
            return None
        try:
            fs = self.dl.get_file_system_client(self.container)
            path = f"ingest/audit/{_utc_path_date()}/{request_id}.json"
            body = json.dumps(event, ensure_ascii=False).encode("utf-8")
            fs.get_file_client(path).upload_data(body, overwrite=True)
            return path
        except Exception as e:  # best-effort
            logger.warning("Audit write failed for request %s: %s", request_id, e)
            return None


def build_audit_sink(settings: AuditSettings):
    if not settings.account:
        return NullAuditSink()
    return DataLakeAuditSink(_datalake_client(settings.account), settings.container)
