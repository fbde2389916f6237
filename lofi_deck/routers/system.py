"""System router — health and audio output devices."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from lofi_deck.routers import deck
from lofi_deck.services.audio.engine import list_output_devices
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("routers.system")
router = APIRouter()

VERSION = "1.0.0"


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint."""
    running = False
    if deck.has_controller():
        running = deck.get_controller().engine.is_running
    return {"status": "ok", "version": VERSION, "audio_running": running}


@router.get("/audio-devices")
async def audio_devices() -> Dict[str, Any]:
    """Output devices visible to PortAudio (empty if sounddevice is unavailable)."""
    try:
        devices = list_output_devices()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Querying audio devices failed: %s", exc)
        devices = []
    return {"devices": devices, "total": len(devices)}
