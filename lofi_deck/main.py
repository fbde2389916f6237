"""Lofi Deck — FastAPI application entry point.

The lifespan builds the DeckController from settings, runs the startup
plan (default song and visuals), and disposes everything on shutdown.

Run with::

    uvicorn lofi_deck.main:app
    # or
    lofi-deck
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lofi_deck.routers import deck, system
from lofi_deck.services.deck.controller import DeckController
from lofi_deck.services.shared.config import get_config
from lofi_deck.services.shared.logging import get_logger, setup_logging_from_config

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A controller installed beforehand (tests, embedding) is used as-is
    owned = not deck.has_controller()
    if owned:
        config = get_config()
        setup_logging_from_config(config)
        controller = DeckController.from_config(config)
        controller.initialize()
        deck.set_controller(controller)
        await deck.run_startup_plan(controller, config)
    try:
        yield
    finally:
        if owned:
            deck.get_controller().dispose()
            deck.set_controller(None)
            logger.info("Lofi Deck shut down")


app = FastAPI(
    title="Lofi Deck",
    version=system.VERSION,
    description="Two-deck crossfading music player with audio-reactive visuals.",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(deck.router,   prefix="/api/deck",   tags=["Deck"])
app.include_router(system.router, prefix="/api/system", tags=["System"])


def run() -> None:
    """Console entry point: serve the app with uvicorn on ``server.host:server.port``."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "lofi_deck.main:app",
        host=str(config.get("server.host", "127.0.0.1")),
        port=int(config.get("server.port", 8000)),
        log_level=str(config.get("logging.level", "INFO")).lower(),
    )


if __name__ == "__main__":
    run()
