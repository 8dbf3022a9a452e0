import sys
from functools import lru_cache
from pathlib import Path

# Make src/ importable on Azure (repo uses src/ layout)
REPO_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(REPO_ROOT / "src"))

import azure.functions as func

from cmi.gateway import handlers
from cmi.gateway.handlers import Channel

# The bearer check is done by the gateway itself (shared webhook secret).
app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@lru_cache(maxsize=1)
def _collaborators() -> handlers.Collaborators:
    return handlers.build_collaborators(REPO_ROOT)


def _ingest(req: func.HttpRequest, channel: Channel) -> func.HttpResponse:
    try:
        collab = _collaborators()
    except (ValueError, OSError) as e:
        return handlers.handle_startup_failure(req, e)
    return handlers.handle_ingest(req, channel, collab)


@app.route(route="ingest/health", methods=["GET"])
def ingest_health(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.handle_health(req)


@app.route(route="ingest/auto", methods=_ALL_METHODS)
def ingest_auto(req: func.HttpRequest) -> func.HttpResponse:
    return _ingest(req, Channel.AUTO)


@app.route(route="ingest/resource", methods=_ALL_METHODS)
def ingest_resource(req: func.HttpRequest) -> func.HttpResponse:
    return _ingest(req, Channel.RESOURCE)


@app.route(route="ingest/segmented", methods=_ALL_METHODS)
def ingest_segmented(req: func.HttpRequest) -> func.HttpResponse:
    return _ingest(req, Channel.SEGMENTED)


@app.route(route="{*path}", methods=_ALL_METHODS)
def not_found(req: func.HttpRequest) -> func.HttpResponse:
    return handlers.handle_not_found(req)
