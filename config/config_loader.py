import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

CONFIG_ENV_VAR = 'GRID_MONITOR_CONFIG'
DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${NAME} or ${NAME:default}; unresolved references without a default stay literal
_ENV_REF = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}')


class ConfigError(RuntimeError):
    pass


def expand_env(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if isinstance(node, str) and '${' in node:
        return _ENV_REF.sub(_substitute, node)
    return node


def _substitute(match: 're.Match') -> str:
    name, default = match.group(1), match.group(2)
    value = os.getenv(name)
    if value is not None:
        return value
    return default if default is not None else match.group(0)


class SectionProxy(Mapping):
    """Read-only view over one level of the config tree; nested dicts come back wrapped."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    @staticmethod
    def _wrap(value: Any) -> Any:
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """
    YAML settings file with environment expansion.

    The path comes from the argument, then ``GRID_MONITOR_CONFIG``, then the
    ``config.yaml`` shipped next to this module. String values may reference
    ``${VAR}`` or ``${VAR:default}``.
    """

    def __init__(self, config_path: Union[str, Path, None] = None):
        path = config_path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        super().__init__(self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Top level of {self.config_path} must be a mapping")
        return expand_env(raw)

    def reload(self) -> None:
        self._data = self._load_config()


config_loader = Config()
