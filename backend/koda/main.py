from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from koda.configs.app_configs import APP_HOST
from koda.configs.app_configs import APP_PORT
from koda.configs.app_configs import CORS_ALLOWED_ORIGINS
from koda.db.engine import SqlEngine
from koda.server.features.animation.api.api import router as animation_router
from koda.server.features.animation.sandbox.manager import get_sandbox_service
from koda.server.features.animation.sandbox.reaper import start_sandbox_reaper
from koda.server.features.animation.sandbox.reaper import stop_sandbox_reaper
from koda.utils.logger import setup_logger

logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    SqlEngine.init_engine()
    SqlEngine.create_tables()

    service = get_sandbox_service()
    start_sandbox_reaper(service.reaper)
    logger.info("Koda API server started")

    try:
        yield
    finally:
        stop_sandbox_reaper()
        SqlEngine.reset_engine()
        logger.info("Koda API server shut down")


def get_application() -> FastAPI:
    application = FastAPI(title="Koda", version="0.1.0", lifespan=lifespan)

    application.include_router(animation_router)

    @application.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    if CORS_ALLOWED_ORIGINS:
        logger.info(f"CORS origins: {CORS_ALLOWED_ORIGINS}")
        application.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = get_application()


if __name__ == "__main__":
    logger.info(f"Starting Koda API server on http://{APP_HOST}:{APP_PORT}/")
    uvicorn.run(app, host=APP_HOST, port=APP_PORT)
