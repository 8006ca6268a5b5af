"""
Variable substitution for configuration values.

Supported forms inside any string value:

- ``${NAME}``      : value of the environment variable ``NAME``
- ``${file:path}`` : content of ``path`` (relative to the config directory),
                      trailing whitespace removed
- ``$$``           : a literal ``$``
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from ghscaler.core.errors import ConfigurationError

_VARIABLE_RE = re.compile(r"(\$\$)|\$\{(file:)?([^}]+)}")


class ConfigResolver:
    """Resolves ``${...}`` references relative to a configuration directory."""

    def __init__(self, config_dir: Union[str, Path] = "."):
        self.config_dir = Path(config_dir) if str(config_dir) else Path(".")

    def resolve(self, value: str) -> str:
        # Only the first failure is reported, the same way the YAML loader stops at the first bad key.
        first_error: list[ConfigurationError] = []

        def _replace(match: re.Match) -> str:
            if match.group(1):
                return "$"
            name = match.group(3)
            try:
                if match.group(2):
                    return self._read_file(name)
                return self._read_env(name)
            except ConfigurationError as exc:
                if not first_error:
                    first_error.append(exc)
                return ""

        resolved = _VARIABLE_RE.sub(_replace, value)
        if first_error:
            raise first_error[0]
        return resolved

    def resolve_opt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self.resolve(value)

    def resolve_tree(self, node: Any) -> Any:
        """Resolve every string in a parsed YAML document."""
        if isinstance(node, str):
            return self.resolve(node)
        if isinstance(node, dict):
            return {key: self.resolve_tree(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self.resolve_tree(item) for item in node]
        return node

    def _read_env(self, name: str) -> str:
        value = os.environ.get(name)
        if value is None:
            raise ConfigurationError(f"Unresolved environment variable '{name}': not set.")
        return value

    def _read_file(self, name: str) -> str:
        path = self.config_dir / name
        try:
            return path.read_text(encoding="utf-8").rstrip()
        except OSError as exc:
            raise ConfigurationError(f"Unresolved file variable '{path}': {exc}") from exc
