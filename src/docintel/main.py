import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from docintel import __version__
from docintel.api.routes import router
from docintel.config import get_settings
from docintel.logging_config import configure_logging

configure_logging(get_settings())

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Document Intelligence API", version=__version__)
app.include_router(router)


@app.get("/", response_class=PlainTextResponse)
def read_root() -> str:
    """Healthcheck endpoint for the service."""
    return "ok"


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"
