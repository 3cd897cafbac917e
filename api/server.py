"""FastAPI server for draw invoice matching.

Run locally with `python -m api.server`.
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health, matching
from core.observability.logging import configure_logging, get_logger
from draw_matching.config import load_settings


logger = get_logger(__name__)


def _cors_origins() -> List[str]:
    raw = os.getenv("DRAW_MATCHING_CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    settings = load_settings()
    logger.info(
        "Draw Matching API starting up",
        extra_fields={
            "db_path": str(settings.db_path),
            "ai_enabled": settings.ai_enabled and bool(settings.openai_api_key),
            "webhook": bool(settings.webhook_base_url),
        },
    )

    yield

    logger.info("Draw Matching API shutting down")


def create_app() -> FastAPI:
    """Create the app with health and matching routes."""
    app = FastAPI(
        title="Draw Matching API",
        description="Matches construction invoices to draw request lines and learns from funded draws",
        version=health.API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(matching.router, tags=["Matching"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
