"""
Utility functions for chatflow.
"""

import json
from pathlib import Path
from typing import Any

from chatflow import CONFIG_DIR, CONFIG_FILE, STATE_FILE, PID_FILE, LOG_FILE


def get_config_dir() -> Path:
    """Get and create the config directory."""
    config_dir = Path(CONFIG_DIR).expanduser()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the config file path."""
    return Path(CONFIG_FILE).expanduser()


def get_state_path() -> Path:
    """Get the persisted store file path."""
    return Path(STATE_FILE).expanduser()


def get_pid_path() -> Path:
    """Get the PID file path."""
    return Path(PID_FILE).expanduser()


def get_log_path() -> Path:
    """Get the log file path."""
    log_path = Path(LOG_FILE).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path


def load_config() -> dict[str, Any]:
    """Load configuration from file."""
    config_path = get_config_path()
    if config_path.exists():
        with open(config_path, "r") as f:
            return json.load(f)
    return {"version": "1.0.0"}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file."""
    config_path = get_config_path()
    get_config_dir()  # Ensure directory exists
    with open(config_path, "w") as f:
        json.dump(config, f, indent=2)


def is_gateway_running() -> tuple[bool, int | None]:
    """Check if the gateway server is running.

    Returns:
        tuple: (is_running, pid)
    """
    pid_path = get_pid_path()
    if not pid_path.exists():
        return False, None

    try:
        with open(pid_path, "r") as f:
            pid = int(f.read().strip())

        # Check if process is actually running
        import psutil
        if psutil.pid_exists(pid):
            try:
                process = psutil.Process(pid)
                if "chatflow" in process.name().lower() or "python" in process.name().lower():
                    return True, pid
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        # Stale PID file
        pid_path.unlink()
        return False, None
    except (ValueError, IOError):
        return False, None


def get_provider_presets() -> list[dict[str, str]]:
    """Known providers and the base URL each one routes through."""
    return [
        {"id": "openai", "name": "OpenAI", "baseUrl": "https://api.openai.com/v1"},
        {"id": "openrouter", "name": "OpenRouter", "baseUrl": "https://openrouter.ai/api/v1"},
        {"id": "anthropic", "name": "Anthropic", "baseUrl": "https://api.anthropic.com/v1"},
        {"id": "gemini", "name": "Gemini CLI", "baseUrl": "gemini-cli"},
        {"id": "antigravity", "name": "Antigravity", "baseUrl": "/api/antigravity"},
        {"id": "ollama", "name": "Ollama", "baseUrl": "http://localhost:11434/v1"},
        {"id": "custom", "name": "Custom", "baseUrl": ""},
    ]


def get_gemini_cli_models() -> list[dict]:
    """Models served through the Gemini CLI Code Assist quota."""
    return [
        {"id": "gemini-2.5-pro", "name": "Gemini 2.5 Pro", "isMultimodal": True},
        {"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash", "isMultimodal": True},
        {"id": "gemini-2.5-flash-lite", "name": "Gemini 2.5 Flash Lite", "isMultimodal": True},
        {"id": "gemini-2.0-flash", "name": "Gemini 2.0 Flash", "isMultimodal": True},
        {"id": "gemini-1.5-pro", "name": "Gemini 1.5 Pro", "isMultimodal": True},
        {"id": "gemini-1.5-flash", "name": "Gemini 1.5 Flash", "isMultimodal": True},
    ]


def get_fallback_antigravity_models() -> list[dict]:
    """Models returned when Antigravity model discovery fails."""
    return [
        {"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash", "isMultimodal": True},
        {"id": "gemini-2.5-flash-lite", "name": "Gemini 2.5 Flash Lite", "isMultimodal": True},
    ]
