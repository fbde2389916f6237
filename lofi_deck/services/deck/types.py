"""Data types for the deck controller."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from lofi_deck.services.audio.types import DeckId
from lofi_deck.services.plugins.base import TransportState


@dataclass(frozen=True)
class DeckState:
    """What one deck holds."""
    name: str
    state: Optional[TransportState]   # None if the song cannot report transport


@dataclass(frozen=True)
class VisualSummary:
    name: str
    layer: int


@dataclass(frozen=True)
class ControllerState:
    """Observable snapshot returned by ``DeckController.get_state()``."""
    active_deck: DeckId
    decks: Dict[DeckId, Optional[DeckState]]
    visuals: List[VisualSummary] = field(default_factory=list)
    is_playing: bool = False
    crossfade_position: float = 0.0
    crossfade_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        def _deck(d: Optional[DeckState]) -> Optional[Dict[str, Any]]:
            if d is None:
                return None
            return {"name": d.name, "state": d.state.to_dict() if d.state else None}

        return {
            "active_deck": self.active_deck.value,
            "decks": {deck.value: _deck(state) for deck, state in self.decks.items()},
            "visuals": [{"name": v.name, "layer": v.layer} for v in self.visuals],
            "is_playing": self.is_playing,
            "crossfade_position": self.crossfade_position,
            "crossfade_in_flight": self.crossfade_in_flight,
        }
