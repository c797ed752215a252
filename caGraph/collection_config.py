"""
Collection run configuration for CA Graph.

Handles loading and validating run settings from JSON files, dicts or CLI arguments.
"""

# Standard library imports
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple


DEFAULTS = {
    'max_depth': 10,
    'checkpoint_every': 25,
    'output_dir': 'output',
    'expand_groups': True,
    'expand_roles': True,
    'include_disabled': True,
    'proxy': None,
    'write_csv': True,
}

BOOL_KEYS = ('expand_groups', 'expand_roles', 'include_disabled', 'write_csv')


class CollectionConfig:
    """Settings for one collection run."""

    def __init__(self, config_data: Dict = None):
        """Initialize configuration.

        Args:
            config_data: Dictionary overriding any of the DEFAULTS keys. Unknown keys
                         are kept so validate() can report them.
        """
        self._values: Dict[str, Any] = dict(DEFAULTS)
        self._unknown: List[str] = []

        for key, value in (config_data or {}).items():
            if key not in DEFAULTS:
                self._unknown.append(key)
            elif value is not None:
                self._values[key] = value

    def __getattr__(self, name: str) -> Any:
        values = self.__dict__.get('_values', {})
        if name in values:
            return values[name]
        raise AttributeError(name)

    @classmethod
    def from_dict(cls, data: Dict) -> 'CollectionConfig':
        return cls(data)

    @classmethod
    def from_file(cls, file_path: str) -> 'CollectionConfig':
        """Load configuration from a JSON file.

        Args:
            file_path: Path to JSON config file

        Returns:
            CollectionConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            json.JSONDecodeError: If file contains invalid JSON
            ValueError: If file doesn't contain a JSON object
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {file_path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a JSON object")

        return cls(data)

    def merge(self, overrides: Dict) -> 'CollectionConfig':
        """Return a new config with non-None ``overrides`` applied (CLI flags win over the file)."""
        data = dict(self._values)
        data.update({k: v for k, v in overrides.items() if v is not None})
        return CollectionConfig(data)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate configuration values.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = [f"Unknown config key: {key}" for key in self._unknown]

        for key in ('max_depth', 'checkpoint_every'):
            value = self._values[key]
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(f"'{key}' must be a positive integer")

        for key in BOOL_KEYS:
            if not isinstance(self._values[key], bool):
                errors.append(f"'{key}' must be true or false")

        if not isinstance(self._values['output_dir'], str) or not self._values['output_dir'].strip():
            errors.append("'output_dir' must be a non-empty path")

        proxy = self._values['proxy']
        if proxy is not None and (not isinstance(proxy, str) or ':' not in proxy):
            errors.append("'proxy' must be in HOST:PORT format")

        return (len(errors) == 0, errors)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def save(self, file_path: str):
        """Save configuration to a JSON file."""
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return f"CollectionConfig(max_depth={self.max_depth}, output_dir={self.output_dir!r})"
