import yaml
from pathlib import Path
from pydantic import ValidationError
from av1janitor.domain.errors import ConfigValidationError
from .models import AppConfig, format_validation_error

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"Failed to parse {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Config root must be a mapping: {config_path}")

    # Flat files (no 'general' section) are accepted for the common keys
    if "general" not in data:
        nested = {key: data.pop(key) for key in ("quality", "paths") if key in data}
        data = {"general": data, **nested}

    try:
        return AppConfig(**data)
    except ValidationError as exc:
        raise ConfigValidationError(format_validation_error(exc)) from exc
