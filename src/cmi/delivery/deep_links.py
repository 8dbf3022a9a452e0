from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

from cmi.common.config import DeepLinkSettings


@dataclass(frozen=True)
class DeepLinkBuilder:
    """
    patient id -> URI that opens the patient's chart in the clinician's app.

    The exact URI layout depends on the chart system's configuration; the
    scheme and the `source` tag come from configs/base.yaml.
    """

    scheme: str = "chart"
    source: str = "ingest"
    web_base_url: Optional[str] = None

    @classmethod
    def from_settings(cls, s: DeepLinkSettings) -> "DeepLinkBuilder":
        return cls(scheme=s.scheme, source=s.source, web_base_url=s.web_base_url)

    def _patient_link(self, patient_id: str, **params: str) -> str:
        query = {"id": patient_id, **params, "source": self.source}
        return f"{self.scheme}://open/patient?{urlencode(query, quote_via=quote)}"

    def patient_chart(self, patient_id: str) -> str:
        return self._patient_link(patient_id)

    def lab_result(self, patient_id: str, order_id: str) -> str:
        return self._patient_link(patient_id, view="results", order=order_id)

    def orders(self, patient_id: str) -> str:
        return self._patient_link(patient_id, view="orders")

    def scheduling(self, patient_id: str) -> str:
        return self._patient_link(patient_id, view="scheduling")

    def messaging(self, patient_id: str) -> str:
        return self._patient_link(patient_id, view="messaging")

    def web_chart(self, patient_id: str) -> Optional[str]:
        # None when no web base URL is configured
        if not self.web_base_url:
            return None
        return f"{self.web_base_url.rstrip('/')}/chart?{urlencode({'patient_id': patient_id}, quote_via=quote)}"

    def __call__(self, patient_id: str) -> str:
        return self.patient_chart(patient_id)
