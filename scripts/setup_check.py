#!/usr/bin/env python3
"""Lofi Deck — Environment Setup Checker

Validates packages, the settings file, plugin factories and audio output
before running Lofi Deck for the first time.

Usage:
    python scripts/setup_check.py                 # full check
    python scripts/setup_check.py --quick         # skip audio device probing
    python scripts/setup_check.py --config my.yaml
"""
from __future__ import annotations

import argparse
import importlib
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

try:
    import yaml
except ImportError:
    print("ERROR: PyYAML not installed.  Run: pip install pyyaml")
    sys.exit(1)

# ── Paths ─────────────────────────────────────────────────────────────────────
REPO_ROOT = Path(__file__).parent.parent
DEFAULT_SETTINGS = REPO_ROOT / "lofi_deck" / "config" / "settings.yaml"

# ── ANSI colours ──────────────────────────────────────────────────────────────
GREEN  = "\033[92m"
YELLOW = "\033[93m"
RED    = "\033[91m"
BLUE   = "\033[94m"
RESET  = "\033[0m"
BOLD   = "\033[1m"


def ok(msg: str) -> str:
    return f"  {GREEN}✓{RESET}  {msg}"


def warn(msg: str) -> str:
    return f"  {YELLOW}⚠{RESET}  {msg}"


def err(msg: str) -> str:
    return f"  {RED}✗{RESET}  {msg}"


def section(title: str) -> None:
    print(f"\n{BOLD}{BLUE}━━ {title} ━━{RESET}")


# ── Result accumulator ────────────────────────────────────────────────────────
@dataclass
class CheckResult:
    passed: int = 0
    warned: int = 0
    failed: int = 0
    messages: List[tuple] = field(default_factory=list)

    def add(self, level: str, msg: str) -> None:
        self.messages.append((level, msg))
        if level == "ok":
            self.passed += 1
            print(ok(msg))
        elif level == "warn":
            self.warned += 1
            print(warn(msg))
        else:
            self.failed += 1
            print(err(msg))

    def print_summary(self) -> None:
        section("Summary")
        total = self.passed + self.warned + self.failed
        print(f"  {GREEN}{self.passed}{RESET} passed  "
              f"{YELLOW}{self.warned}{RESET} warnings  "
              f"{RED}{self.failed}{RESET} failed  "
              f"({total} checks)")

    @property
    def exit_code(self) -> int:
        return 0 if self.failed == 0 else 1


# ── Individual checks ─────────────────────────────────────────────────────────


def check_python_version(result: CheckResult) -> None:
    section("Python")
    major, minor = sys.version_info[:2]
    if (major, minor) >= (3, 10):
        result.add("ok", f"Python {major}.{minor}")
    else:
        result.add("fail", f"Python {major}.{minor} — need 3.10+")


def check_python_packages(result: CheckResult) -> None:
    section("Python packages")
    required = ["fastapi", "uvicorn", "pydantic", "yaml", "dotenv", "numpy"]
    optional = {"sounddevice": "needed for audio.output=sounddevice",
                "pytest": "needed to run the test suite"}

    for pkg in required:
        try:
            importlib.import_module(pkg)
            result.add("ok", f"Package: {pkg}")
        except ImportError:
            result.add("fail", f"Package missing: {pkg}")

    for pkg, purpose in optional.items():
        try:
            importlib.import_module(pkg)
            result.add("ok", f"Package: {pkg}")
        except (ImportError, OSError):
            result.add("warn", f"{pkg} unavailable — {purpose}")


def load_settings(path: Path, result: CheckResult) -> Optional[dict]:
    section("Settings")
    if not path.exists():
        result.add("fail", f"settings file not found: {path}")
        return None
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        result.add("fail", f"settings file is not valid YAML: {exc}")
        return None
    if not isinstance(data, dict):
        result.add("fail", "settings file must be a YAML mapping")
        return None
    result.add("ok", f"Loaded {path}")

    output = (data.get("audio") or {}).get("output", "offline")
    if output not in ("offline", "sounddevice", "null"):
        result.add("fail", f"audio.output={output!r} is not offline|sounddevice|null")
    else:
        result.add("ok", f"audio.output={output}")

    fps = (data.get("render") or {}).get("fps", 60)
    if not isinstance(fps, (int, float)) or fps <= 0:
        result.add("fail", f"render.fps must be positive, got {fps!r}")
    return data


def check_plugins(settings: dict, result: CheckResult) -> None:
    section("Plugins")
    sys.path.insert(0, str(REPO_ROOT))
    from lofi_deck.services.plugins.registry import PluginResolutionError, load_factory

    plugins = settings.get("plugins") or {}
    for kind in ("songs", "visuals"):
        entries = plugins.get(kind) or {}
        if not entries:
            result.add("warn", f"No {kind} registered")
        for name, target in entries.items():
            try:
                load_factory(str(target))
                result.add("ok", f"{kind[:-1]} '{name}' → {target}")
            except PluginResolutionError as exc:
                result.add("fail", f"{kind[:-1]} '{name}': {exc}")

    startup = settings.get("startup") or {}
    song = startup.get("song")
    if song and song not in (plugins.get("songs") or {}):
        result.add("fail", f"startup.song '{song}' is not a registered song")


def check_audio_output(settings: dict, result: CheckResult) -> None:
    section("Audio output")
    audio = settings.get("audio") or {}
    if audio.get("output", "offline") != "sounddevice":
        result.add("ok", f"Output backend '{audio.get('output', 'offline')}' needs no device")
        return
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        result.add("fail", f"sounddevice unusable: {exc}")
        return
    try:
        outputs = [d for d in sd.query_devices() if d.get("max_output_channels", 0) > 0]
    except Exception as exc:  # noqa: BLE001
        result.add("fail", f"Could not query audio devices: {exc}")
        return
    if not outputs:
        result.add("fail", "No audio output devices found")
        return
    result.add("ok", f"{len(outputs)} output device(s) found")

    device = audio.get("device")
    if device is not None:
        try:
            sd.check_output_settings(
                device=device,
                channels=int(audio.get("channels", 2)),
                samplerate=int(audio.get("sample_rate", 44100)),
            )
            result.add("ok", f"Device {device!r} accepts the configured format")
        except Exception as exc:  # noqa: BLE001
            result.add("fail", f"Device {device!r} rejected settings: {exc}")


def check_log_file(settings: dict, result: CheckResult) -> None:
    section("Logging")
    log_file = (settings.get("logging") or {}).get("file")
    if not log_file:
        result.add("ok", "Logging to console only")
        return
    parent = Path(log_file).parent
    parent.mkdir(parents=True, exist_ok=True)
    result.add("ok", f"Log directory ready: {parent}")


# ── Main ──────────────────────────────────────────────────────────────────────


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Lofi Deck environment setup checker")
    parser.add_argument("--quick", action="store_true", help="Skip audio device probing")
    parser.add_argument("--config", type=Path, default=DEFAULT_SETTINGS,
                        help="Settings file to validate")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    result = CheckResult()

    print(f"\n{BOLD}Lofi Deck — Setup Checker{RESET}")
    print(f"Repo root: {REPO_ROOT}")

    check_python_version(result)
    check_python_packages(result)
    settings = load_settings(args.config, result)
    if settings is not None:
        check_plugins(settings, result)
        if not args.quick:
            check_audio_output(settings, result)
        check_log_file(settings, result)

    result.print_summary()
    print()
    if result.failed == 0 and result.warned == 0:
        print(f"{GREEN}{BOLD}✓ All checks passed — Lofi Deck is ready!{RESET}\n")
    elif result.failed == 0:
        print(f"{YELLOW}{BOLD}⚠ Setup complete with warnings.{RESET}\n")
    else:
        print(f"{RED}{BOLD}✗ {result.failed} check(s) failed.{RESET}\n")
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
