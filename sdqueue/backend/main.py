"""FastAPI entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sdqueue.backend.api.routes import get_services, router
from sdqueue.backend.config import ALLOWED_ORIGINS, APP_NAME, DEFAULT_HOST, DEFAULT_PORT, LOG_DIR
from sdqueue.backend.utils.logging_utils import setup_logging
from sdqueue.backend.utils.resource_utils import (
    abort_shutdown,
    full_shutdown_cleanup,
    register_shutdown,
    reset_shutdown_state,
)

logger = logging.getLogger(__name__)

setup_logging(LOG_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    reset_shutdown_state()
    register_shutdown(services.queue_manager, services.model_guard)

    count = services.registry.scan()
    if count == 0:
        logger.warning("No model files found under %s", services.registry.paths.checkpoints.parent)
    services.queue_manager.start()
    try:
        yield
    finally:
        try:
            await asyncio.to_thread(full_shutdown_cleanup, services.queue_manager, services.model_guard)
        except asyncio.CancelledError:
            abort_shutdown(services.queue_manager)
            raise


app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=DEFAULT_HOST, port=DEFAULT_PORT)


if __name__ == "__main__":
    run()
