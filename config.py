import os
import yaml
from pathlib import Path
from pydantic import BaseModel, ValidationError, field_validator
from typing import Any, Literal, Optional

EXAMPLE_CONFIG = """api_key: ${DEEPSEEK_API_KEY}
proxy_port: 12000
target_base_url: https://api.deepseek.com"""


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid"""


class AppConfig(BaseModel):
    api_key: str
    proxy_port: int = 12000
    target_base_url: str = "https://api.deepseek.com"
    timeout: float = 300.0
    # inline: fold reasoning into <think> tags; clear: blank it out
    reasoning_mode: Literal["inline", "clear"] = "inline"
    strict_content_type: bool = False
    debug_requests_dir: Optional[Path] = None

    @field_validator("api_key")
    @classmethod
    def _api_key_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("api_key must not be empty")
        return value

    @field_validator("target_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def _resolve_env(obj: Any) -> Any:
    """Recursively resolve ${ENV_VAR} placeholders"""
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        return os.getenv(obj[2:-1], obj)  # Fallback to original
    if isinstance(obj, dict):
        return {k: _resolve_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_env(item) for item in obj]
    return obj


def load_config(path: str = "config.yaml") -> AppConfig:
    """Load and validate configuration (JSON files parse as YAML too)"""
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"Cannot open config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    resolved = _resolve_env(raw)
    try:
        return AppConfig(**resolved)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
