"""Settings for Lofi Deck.

Read once at startup from a YAML file; ``.env`` values are loaded into the
environment first so ``LOFI_DECK_*`` variables can override the settings
path and output device:

  1. ``lofi_deck/config/settings.yaml``  (default)
  2. ``.env`` in the working directory
  3. Environment variables              (highest priority)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_SETTINGS = Path(__file__).parent.parent.parent / "config" / "settings.yaml"
CONFIG_ENV_VAR = "LOFI_DECK_CONFIG"

# env var → dotted settings key
_ENV_OVERRIDES = {
    "LOFI_DECK_AUDIO_OUTPUT": "audio.output",
    "LOFI_DECK_AUDIO_DEVICE": "audio.device",
    "LOFI_DECK_LOG_LEVEL": "logging.level",
}

_config_instance: Optional["Config"] = None


class Config:
    """Read-only settings tree with dot-notation access."""

    def __init__(self, config_path: str):
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(path) as f:
            self._data: dict = yaml.safe_load(f)
        if not isinstance(self._data, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(self._data)}")
        self.path = path
        self._load_env()
        self._apply_env_overrides()

    # ── private ──────────────────────────────────────────────────────────────

    def _load_env(self) -> None:
        local_env = Path.cwd() / ".env"
        if local_env.exists():
            load_dotenv(local_env, override=False)

    def _apply_env_overrides(self) -> None:
        for var, key in _ENV_OVERRIDES.items():
            value = os.environ.get(var)
            if value is None:
                continue
            node = self._data
            *parents, leaf = key.split(".")
            for k in parents:
                node = node.setdefault(k, {})
            node[leaf] = value

    # ── public ───────────────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Dot-notation access into the YAML tree.

        Example::

            config.get("audio.sample_rate")          # 44100
            config.get("plugins.songs.demo")         # "lofi_deck....:DemoSong"
            config.get("missing.key", "fallback")    # "fallback"
        """
        val: Any = self._data
        for k in key.split("."):
            if isinstance(val, dict) and k in val:
                val = val[k]
            else:
                return default
        return val

    def section(self, key: str) -> Dict[str, Any]:
        """Return a mapping section, or an empty dict if missing."""
        val = self.get(key)
        return dict(val) if isinstance(val, dict) else {}

    def get_path(self, key: str) -> Path:
        """Return a config value as a Path object.

        Raises KeyError if the key does not exist.
        """
        val = self.get(key)
        if val is None:
            raise KeyError(f"Config key not found: {key}")
        return Path(str(val))

    def get_env(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return an environment variable value."""
        return os.environ.get(name, default)


# ── module-level singleton ────────────────────────────────────────────────────


def get_config(config_path: Optional[str] = None) -> Config:
    """Return the singleton Config instance.

    The first call loads ``config_path``, falling back to ``$LOFI_DECK_CONFIG``
    and then to the bundled ``settings.yaml``.  Later calls return the same
    instance and ignore the argument.
    """
    global _config_instance
    if _config_instance is None:
        path = config_path or os.environ.get(CONFIG_ENV_VAR) or str(DEFAULT_SETTINGS)
        _config_instance = Config(path)
    return _config_instance


def reset_config() -> None:
    """Clear the singleton (mainly for testing)."""
    global _config_instance
    _config_instance = None
