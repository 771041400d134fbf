from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger

from threadrelay.bridge.log import setup_logging
from threadrelay.bridge.service import RelayService
from threadrelay.bridge.settings import get_settings
from threadrelay.gateway.gateway import ThreadGateway


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, debug=settings.debug)

    logger.info("threadrelay starting (host={}, port={})", settings.host, settings.port)
    logger.info("Data root: {}", settings.data_root)

    channels = settings.channel_map()
    if not channels:
        logger.warning("No watched channels configured (set RELAY_CHANNELS or RELAY_WORKING_DIR)")
    for name, working_dir in channels.items():
        logger.info("Watching #{} -> {}", name, working_dir)

    # -- Service ---------------------------------------------------------------
    service = RelayService(settings)
    service.start()
    _app.state.service = service
    # The chat client adapter picks the gateway up from here.
    _app.state.gateway = ThreadGateway(service)

    yield

    # -- Shutdown --------------------------------------------------------------
    _app.state.gateway = None
    _app.state.service = None
    await service.shutdown()
    logger.info("threadrelay stopped")


app = FastAPI(title="threadrelay", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all control endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# -- Control routers ---------------------------------------------------------
from threadrelay.bridge.routers.models import router as models_router  # noqa: E402
from threadrelay.bridge.routers.threads import router as threads_router  # noqa: E402

api.include_router(threads_router)
api.include_router(models_router)

app.include_router(api)
