"""
YAML configuration files with ``${NAME}`` / ``${NAME:default}`` expansion.

Expansion happens on the raw text before parsing, so a variable can supply
any scalar. Lines whose first non-blank character is ``#`` are left alone.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

import yaml

logger = logging.getLogger(__name__)

ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::(?P<default>[^}]*))?\}")


class YAMLConfigParser:
    """Reads docpipe configuration files into plain dictionaries."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ
        # Variables seen in the last loaded file
        self.referenced_variables: Set[str] = set()

    def load_yaml_config(self, config_path: Path) -> Dict[str, Any]:
        """
        Load ``config_path``; an empty file yields ``{}``.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: On unset variables, invalid YAML, or a non-mapping document
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        text = config_path.read_text(encoding="utf-8")
        expanded = self.expand(text)

        try:
            document = yaml.safe_load(expanded)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ValueError(f"{config_path} must contain a mapping of sections, got {type(document).__name__}")

        logger.debug(f"Loaded configuration sections {sorted(document)} from {config_path}")
        return document

    def expand(self, text: str) -> str:
        """Replace variable references, reporting every unset variable at once."""
        environ = os.environ if self._environ is None else self._environ
        self.referenced_variables = set()
        missing: List[str] = []

        def lookup(match: "re.Match[str]") -> str:
            name = match.group("name")
            self.referenced_variables.add(name)
            value = environ.get(name)
            if value is not None:
                return value
            if match.group("default") is not None:
                return match.group("default")
            missing.append(f"{name} (line {line_number})")
            return match.group(0)

        expanded_lines = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            if line.lstrip().startswith("#"):
                expanded_lines.append(line)
            else:
                expanded_lines.append(ENV_REFERENCE.sub(lookup, line))

        if missing:
            raise ValueError(f"Environment variables not set: {', '.join(missing)}")
        return "\n".join(expanded_lines)
