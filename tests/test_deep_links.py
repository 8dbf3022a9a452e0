from cmi.common.config import DeepLinkSettings
from cmi.delivery.deep_links import DeepLinkBuilder


def test_patient_chart_link():
    links = DeepLinkBuilder(scheme="chart", source="ingest")
    assert links("E7891234") == "chart://open/patient?id=E7891234&source=ingest"
    assert links.patient_chart("E7891234") == links("E7891234")


def test_views():
    links = DeepLinkBuilder(scheme="chart", source="ingest")

    assert links.lab_result("E1", "ORD 5") == "chart://open/patient?id=E1&view=results&order=ORD%205&source=ingest"
    assert links.orders("E1").endswith("view=orders&source=ingest")
    assert links.scheduling("E1").endswith("view=scheduling&source=ingest")
    assert links.messaging("E1").endswith("view=messaging&source=ingest")


def test_patient_id_is_escaped():
    assert DeepLinkBuilder()("a/b&c") == "chart://open/patient?id=a%2Fb%26c&source=ingest"


def test_web_chart_needs_base_url():
    assert DeepLinkBuilder().web_chart("E1") is None

    links = DeepLinkBuilder.from_settings(
        DeepLinkSettings(scheme="ehr", source="gw", web_base_url="https://chart.example.org/")
    )
    assert links.web_chart("E1") == "https://chart.example.org/chart?patient_id=E1"
    assert links("E1") == "ehr://open/patient?id=E1&source=gw"
