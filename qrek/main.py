"""FastAPI application served on the bootstrap's listening socket."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from qrek import __version__
from qrek.config import ServiceSettings
from qrek.routers import system

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: ServiceSettings = app.state.settings
    logger.info("qrek %s ready (configured for %s)", __version__, settings.listen_at)
    try:
        yield
    finally:
        logger.info("qrek shutting down")


def create_app(settings: Optional[ServiceSettings] = None) -> FastAPI:
    app = FastAPI(title="qrek", version=__version__, lifespan=lifespan)
    app.state.settings = settings if settings is not None else ServiceSettings()
    app.include_router(system.router)
    return app
