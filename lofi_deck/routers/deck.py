"""Deck router — load songs/visuals, transport, crossfade, analysis."""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field

from lofi_deck.services.deck.controller import DeckController
from lofi_deck.services.plugins.base import plugin_name
from lofi_deck.services.plugins.registry import PluginLoadError, PluginResolutionError
from lofi_deck.services.shared.config import Config
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("routers.deck")
router = APIRouter()

# ── Module-level singleton (set up by the app lifespan) ───────────────────────
_controller: Optional[DeckController] = None


def get_controller() -> DeckController:
    if _controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deck controller not running",
        )
    return _controller


def set_controller(controller: Optional[DeckController]) -> None:
    global _controller
    _controller = controller


def has_controller() -> bool:
    return _controller is not None


async def run_startup_plan(controller: DeckController, config: Config) -> None:
    """Load the song/visuals named under ``startup.*``.  Failures are logged."""
    song = config.get("startup.song")
    if song:
        try:
            await controller.load_song(song, config.get("startup.deck", "A"))
        except (PluginResolutionError, PluginLoadError) as exc:
            logger.error("Startup song '%s' not loaded: %s", song, exc)

    for entry in config.get("startup.visuals", []) or []:
        name = entry.get("name") if isinstance(entry, dict) else entry
        layer = int(entry.get("layer", 0)) if isinstance(entry, dict) else 0
        try:
            await controller.load_visual(name, layer)
        except (PluginResolutionError, PluginLoadError) as exc:
            logger.error("Startup visual '%s' not loaded: %s", name, exc)

    if config.get("startup.autoplay", False):
        await controller.play()


# ── Pydantic models ───────────────────────────────────────────────────────────


class LoadSongRequest(BaseModel):
    source: str
    deck: Literal["A", "B"] = "A"


class LoadVisualRequest(BaseModel):
    source: str
    layer: int = 0


class CrossfadeRequest(BaseModel):
    duration: Optional[float] = Field(default=None, ge=0.0)


class SectionRequest(BaseModel):
    name: str


class TempoRequest(BaseModel):
    bpm: float = Field(gt=0.0)


class MasterRequest(BaseModel):
    db: float = Field(le=12.0)


class OptionRequest(BaseModel):
    key: str
    value: Any


def _state() -> Dict[str, Any]:
    return get_controller().get_state().to_dict()


# ── Endpoints ─────────────────────────────────────────────────────────────────


@router.get("/state")
async def get_state() -> Dict[str, Any]:
    """Active deck, what each deck holds, the visual stack and crossfader."""
    return _state()


@router.get("/plugins")
async def list_plugins() -> Dict[str, Any]:
    registry = get_controller().registry
    return {"songs": registry.song_names(), "visuals": registry.visual_names()}


@router.post("/songs", status_code=status.HTTP_201_CREATED)
async def load_song(request: LoadSongRequest) -> Dict[str, Any]:
    """Load a registered song into a deck, replacing what was there."""
    controller = get_controller()
    try:
        song = await controller.load_song(request.source, request.deck)
    except PluginResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PluginLoadError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"deck": request.deck, "song": plugin_name(song)}


@router.post("/visuals", status_code=status.HTTP_201_CREATED)
async def load_visual(request: LoadVisualRequest) -> Dict[str, Any]:
    controller = get_controller()
    try:
        visual = await controller.load_visual(request.source, request.layer)
    except PluginResolutionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PluginLoadError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"name": plugin_name(visual), "layer": request.layer}


@router.delete("/visuals/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_visual(name: str) -> Response:
    controller = get_controller()
    visual = controller.find_visual(name)
    if visual is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Visual '{name}' not loaded")
    controller.remove_visual(visual)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/visuals/{name}/options")
async def get_visual_options(name: str) -> Dict[str, Any]:
    options = get_controller().get_visual_options(name)
    if options is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Visual '{name}' not loaded or has no options")
    return {"name": name, "options": options}


@router.post("/visuals/{name}/options")
async def set_visual_option(name: str, request: OptionRequest) -> Dict[str, Any]:
    controller = get_controller()
    try:
        applied = controller.set_visual_option(name, request.key, request.value)
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if not applied:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Visual '{name}' not loaded or has no options")
    return {"name": name, "options": controller.get_visual_options(name) or {}}


@router.post("/play")
async def play() -> Dict[str, Any]:
    await get_controller().play()
    return _state()


@router.post("/pause")
async def pause() -> Dict[str, Any]:
    get_controller().pause()
    return _state()


@router.post("/stop")
async def stop() -> Dict[str, Any]:
    get_controller().stop()
    return _state()


@router.post("/crossfade")
async def start_crossfade(request: CrossfadeRequest) -> Dict[str, Any]:
    """Fade to the other deck.  ``started`` is false if it was refused."""
    controller = get_controller()
    started = await controller.start_crossfade(request.duration)
    return {"started": started, "state": _state()}


@router.post("/switch")
async def switch_deck() -> Dict[str, Any]:
    get_controller().switch_deck()
    return _state()


@router.post("/section")
async def jump_to_section(request: SectionRequest) -> Dict[str, Any]:
    forwarded = get_controller().jump_to_section(request.name)
    return {"forwarded": forwarded}


@router.post("/tracks/{track}/mute")
async def mute_track(track: str) -> Dict[str, Any]:
    return {"forwarded": get_controller().mute_track(track)}


@router.post("/tracks/{track}/unmute")
async def unmute_track(track: str) -> Dict[str, Any]:
    return {"forwarded": get_controller().unmute_track(track)}


@router.post("/tempo")
async def set_tempo(request: TempoRequest) -> Dict[str, Any]:
    return {"forwarded": get_controller().set_tempo(request.bpm)}


@router.post("/master")
async def set_master(request: MasterRequest) -> Dict[str, Any]:
    controller = get_controller()
    controller.set_master_level(request.db)
    return {"master_db": controller.graph.master_level}


@router.get("/analysis")
async def get_analysis() -> Dict[str, Any]:
    """Current spectrum/waveform/loudness of the mix (volume null = silence)."""
    return get_controller().graph.read_analysis_snapshot().to_dict()
