"""Configuration management for codewright."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("codewright.config")

APP_DIR_NAME = ".codewright"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "CODEWRIGHT_"


def get_app_dir() -> Path:
    """Return ~/.codewright, where config and index data live."""
    return Path.home() / APP_DIR_NAME


DEFAULT_CONFIG = {
    # Model providers
    "default_provider": "ollama",
    "ollama_url": "http://127.0.0.1:11434",
    "ollama_model": "llama3",
    "ollama_timeout": 600.0,
    "openai_url": "https://api.openai.com/v1/chat/completions",
    "openai_model": "gpt-4o-mini",
    "openai_key": "",
    "gemini_url": "https://generativelanguage.googleapis.com/v1beta/models",
    "gemini_model": "gemini-1.5-flash",
    "gemini_key": "",
    "model_temperature": 0.1,
    # Embeddings (served by ollama)
    "embedding_enabled": True,
    "embedding_model": "nomic-embed-text",
    "embedding_batch_size": 32,
    # Agent loop
    "agent_max_iterations": 20,
    "tool_result_max_chars": 15000,
    "step_preview_chars": 500,
    # run_command / validate_project / run_tests
    "command_timeout": 60.0,
    "command_max_output": 10 * 1024 * 1024,
    "validate_command": "python -m compileall -q .",
    "validate_marker": "pyproject.toml",
    "test_command": "python -m pytest -q",
    "test_marker": "tests",
    # Workspace scanning
    "search_max_results": 50,
    "search_max_file_size": 100_000,
    "manifest_max_files": 2000,
    "blast_radius_depth": 3,
    "semantic_search_limit": 5,
    "watch_enabled": True,
    "workspace_path": "",
    # HTTP server
    "host": "127.0.0.1",
    "port": 3000,
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.codewright/config.json."""

    # Model providers
    default_provider: str
    ollama_url: str
    ollama_model: str
    ollama_timeout: float
    openai_url: str
    openai_model: str
    openai_key: str
    gemini_url: str
    gemini_model: str
    gemini_key: str
    model_temperature: float

    # Embeddings
    embedding_enabled: bool
    embedding_model: str
    embedding_batch_size: int

    # Agent loop controls
    agent_max_iterations: int
    tool_result_max_chars: int
    step_preview_chars: int

    # Commands
    command_timeout: float
    command_max_output: int
    validate_command: str
    validate_marker: str
    test_command: str
    test_marker: str

    # Workspace scanning
    search_max_results: int
    search_max_file_size: int
    manifest_max_files: int
    blast_radius_depth: int
    semantic_search_limit: int
    watch_enabled: bool
    workspace_path: str

    # HTTP server
    host: str
    port: int

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from the given path or the default ~/.codewright/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = get_app_dir()
            config_file = config_dir / CONFIG_FILENAME
            config_dir.mkdir(parents=True, exist_ok=True)

        current_config = DEFAULT_CONFIG.copy()

        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    user_config = json.load(f)
                current_config.update(
                    {k: v for k, v in user_config.items() if k in DEFAULT_CONFIG}
                )
                unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
                if unknown:
                    logger.warning(f"Ignoring unknown config keys in {config_file}: {unknown}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w", encoding="utf-8") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}. Using defaults.")

        # Environment variables win over the file
        for key, default_val in DEFAULT_CONFIG.items():
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key not in os.environ:
                continue
            val = os.environ[env_key]
            if isinstance(default_val, bool):
                current_config[key] = val.lower() in ("true", "1", "yes")
            elif isinstance(default_val, int):
                try:
                    current_config[key] = int(val)
                except ValueError:
                    logger.warning(f"Ignoring {env_key}={val!r}: not an integer")
            elif isinstance(default_val, float):
                try:
                    current_config[key] = float(val)
                except ValueError:
                    logger.warning(f"Ignoring {env_key}={val!r}: not a number")
            else:
                current_config[key] = val

        return cls(**current_config)


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config
