"""Configuration loader for the ingestion engine."""

import os
import re
from pathlib import Path
from typing import Optional

import yaml

from src.configs.settings import get_settings

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_placeholders(content: str) -> str:
    """
    Replace ``${NAME}`` placeholders with values from settings or the environment.

    Settings take precedence over raw environment variables. Unknown
    placeholders are left untouched so the YAML error points at them.
    """
    values = {}
    for key, value in get_settings().model_dump().items():
        if value is None:
            continue
        values[key] = (
            value.get_secret_value()
            if hasattr(value, "get_secret_value")
            else str(value)
        )

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return os.environ.get(name, match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, content)


class Config:
    """Configuration for the ingestion engine."""

    CONFIG_DIR = Path(__file__).parent.resolve()

    @classmethod
    def sources_config_path(cls) -> Path:
        """Return the configured sources file path."""
        return Path(get_settings().SOURCES_CONFIG_PATH)

    @classmethod
    def load_sources_config(cls, path: Optional[Path] = None) -> dict:
        """Load the YAML sources file, substituting ``${NAME}`` placeholders."""
        config_path = Path(path) if path else cls.sources_config_path()
        if not config_path.exists():
            raise FileNotFoundError(f"Missing config at {config_path}")

        with open(config_path, encoding="utf-8") as f:
            content = substitute_placeholders(f.read())

        return yaml.safe_load(content) or {}
