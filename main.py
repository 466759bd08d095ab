import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, configure_logging
from dependencies import Container, build_container
from errors import register_error_handlers
from routers.jobs import router as jobs_router
from routers.webhooks import router as webhooks_router

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    """Build the API. The container is created once, at startup, if not given."""
    settings = settings or (container.settings if container else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container(settings)
        yield

    app = FastAPI(
        title="PetDance API",
        description="Turns a pet photo into a dancing video through a hosted video model.",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(jobs_router)
    app.include_router(webhooks_router)

    @app.get("/")
    def read_root():
        return {"status": "🐾 PetDance API is running!"}

    return app


# --------------------------------------------------------------------------
# --- Entry point ---
# --------------------------------------------------------------------------

_settings = Settings.from_env()
configure_logging(_settings.log_level)
logging.getLogger(__name__).info("Starting PetDance API")
app = create_app(_settings)
