"""Configuration for the code assistant.

Values are merged in order: built-in defaults, the JSON config file
(``~/.code-assistant/config.json`` unless another path is given), then
``CODEASSIST_*`` environment variables. A local ``.env`` file is loaded into
the environment first.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger("codeassist.config")

ENV_PREFIX = "CODEASSIST_"

# field name -> environment variable suffix
_ENV_FIELDS: Dict[str, str] = {
    "backend": "BACKEND",
    "model": "MODEL",
    "base_url": "BASE_URL",
    "default_language": "DEFAULT_LANGUAGE",
    "theme": "THEME",
    "max_tokens": "MAX_TOKENS",
    "temperature": "TEMPERATURE",
    "backend_timeout": "BACKEND_TIMEOUT",
    "stream_delay_min": "STREAM_DELAY_MIN",
    "stream_delay_max": "STREAM_DELAY_MAX",
    "data_dir": "DATA_DIR",
    "context_messages": "CONTEXT_MESSAGES",
    "metrics_port": "METRICS_PORT",
}


class ConfigError(ValueError):
    pass


class AssistantConfig(BaseModel):
    backend: Literal["template", "local"] = "template"
    model: Optional[str] = None
    base_url: str = "http://127.0.0.1:11434"
    default_language: str = "python"
    theme: Literal["light", "dark"] = "dark"
    max_tokens: int = Field(default=4000, ge=1, le=8000)
    temperature: float = Field(default=0.7, ge=0, le=2)
    backend_timeout: float = Field(default=60.0, gt=0)
    stream_delay_min: float = Field(default=0.05, ge=0)
    stream_delay_max: float = Field(default=0.15, ge=0)
    data_dir: Optional[str] = None
    context_messages: int = Field(default=10, ge=0)
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_delay_range(self) -> "AssistantConfig":
        if self.stream_delay_max < self.stream_delay_min:
            raise ValueError("stream_delay_max must be >= stream_delay_min")
        return self


def default_config_path() -> Path:
    return Path.home() / ".code-assistant" / "config.json"


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("config_file_unreadable path=%s err=%s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("config_file_ignored path=%s reason=not an object", path)
        return {}
    return data


def _read_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field_name, suffix in _ENV_FIELDS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None or raw.strip() == "":
            continue
        values[field_name] = raw.strip()
    return values


def load_config(
    path: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AssistantConfig:
    """Build the effective configuration.

    ``overrides`` (typically from command-line flags) win over everything
    else; ``None`` values in it are ignored. Raises ``ConfigError`` when the
    merged values fail validation.
    """
    if env is None:
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ
    config_path = Path(path).expanduser() if path else default_config_path()

    merged: Dict[str, Any] = {}
    merged.update(_read_config_file(config_path))
    merged.update(_read_env(env))
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
    unknown = sorted(set(merged) - set(AssistantConfig.model_fields))
    if unknown:
        logger.warning("config_keys_ignored keys=%s", ",".join(unknown))
        for key in unknown:
            merged.pop(key)
    try:
        return AssistantConfig.model_validate(merged)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {errors}") from exc
