# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow descriptor loading.

Descriptors are YAML or JSON documents. Files ending in ``.json`` (and
strings that start with ``{``) are parsed as strict JSON so syntax errors
point at the right line; everything else goes through ruamel.yaml. Before
schema validation every string value has ``${VAR}`` and ``${VAR:-default}``
references replaced from the environment.

Credential references (``credentialRef: env:NAME``) are not touched here:
they are resolved per call by the secret store, never at load time.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from agentflow.config.schema import WorkflowConfig
from agentflow.exceptions import ConfigurationError

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

MAX_ENV_DEPTH = 10


def resolve_env_vars(value: str, max_depth: int = MAX_ENV_DEPTH) -> str:
    """Substitute environment references in one string.

    Substituted values are scanned again, so a variable may point at
    another variable, up to ``max_depth`` levels.

    Raises:
        ConfigurationError: If a variable without a default is unset, or
            the references are circular.
    """
    for _ in range(max_depth):
        if not ENV_VAR_PATTERN.search(value):
            return value
        value = ENV_VAR_PATTERN.sub(_env_value, value)

    if ENV_VAR_PATTERN.search(value):
        raise ConfigurationError(
            f"Maximum recursion depth exceeded while resolving environment variables in: {value}",
            suggestion="Check for circular references in your environment variables.",
        )
    return value


def _env_value(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    value = os.environ.get(name, default)
    if value is None:
        raise ConfigurationError(
            f"Required environment variable '{name}' is not set",
            suggestion=f"Set '{name}' or give a default: ${{{name}:-value}}",
        )
    return value


def _substitute(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    if isinstance(data, dict):
        return {key: _substitute(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_substitute(item) for item in data]
    return data


def format_violations(error: PydanticValidationError) -> list[str]:
    """Flatten a Pydantic error into ``location: message`` lines.

    Locations use the descriptor's camelCase field names, e.g.
    ``workflowSequence.0.agentId: Field required``.
    """
    violations = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "Unknown error")
        violations.append(f"{loc}: {msg}" if loc else msg)
    return violations


def _first_location(error: PydanticValidationError) -> str | None:
    errors = error.errors()
    if not errors or not errors[0].get("loc"):
        return None
    return ".".join(str(part) for part in errors[0]["loc"])


def _looks_like_json(content: str, source_path: Path | None) -> bool:
    if source_path is not None and source_path.suffix.lower() == ".json":
        return True
    return content.lstrip().startswith("{")


class ConfigLoader:
    """Loads workflow descriptors into validated WorkflowConfig models.

    Only the schema is checked here. Cross-references, single writers and
    cycles are checked when a WorkflowGraph is built from the config.
    """

    def __init__(self) -> None:
        self._yaml = YAML(typ="safe")

    def load(self, path: str | Path) -> WorkflowConfig:
        """Load a descriptor file.

        Raises:
            ConfigurationError: If the file is missing or unreadable, or its
                content is invalid.
        """
        path = Path(path)

        if not path.exists():
            raise ConfigurationError(
                f"Workflow file not found: {path}",
                suggestion="Check that the file path is correct and the file exists.",
            )
        if not path.is_file():
            raise ConfigurationError(
                f"Path is not a file: {path}",
                suggestion="Provide a path to a YAML or JSON file, not a directory.",
            )

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Failed to read workflow file '{path}': {e}",
                suggestion="Check file permissions and ensure the file is readable.",
                file_path=str(path),
            ) from e

        return self.load_string(content, source_path=path)

    def load_string(self, content: str, source_path: Path | None = None) -> WorkflowConfig:
        """Load a descriptor from YAML or JSON text.

        Args:
            content: The document text.
            source_path: Where the text came from; picks the parser by suffix
                and is reported in errors.

        Raises:
            ConfigurationError: If the text does not parse to a single
                mapping or fails schema validation.
        """
        source = str(source_path) if source_path else "<string>"
        file_path = str(source_path) if source_path else None

        if _looks_like_json(content, source_path):
            data = self._parse_json(content, source, file_path)
        else:
            data = self._parse_yaml(content, source, file_path)

        if data is None:
            raise ConfigurationError(
                f"Empty workflow descriptor: {source}",
                suggestion="Add a workflow descriptor to the file.",
                file_path=file_path,
            )
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid descriptor format in '{source}': "
                f"expected a mapping, got {type(data).__name__}",
                suggestion="Ensure the file contains a single workflow descriptor object.",
                file_path=file_path,
            )

        return self.load_dict(data, source, file_path=file_path)

    def load_dict(
        self,
        data: dict[str, Any],
        source: str = "<dict>",
        file_path: str | None = None,
    ) -> WorkflowConfig:
        """Validate an already-parsed descriptor mapping.

        Raises:
            ConfigurationError: If an environment reference cannot be
                resolved or the data fails schema validation. ``violations``
                lists every schema problem.
        """
        data = _substitute(data)
        try:
            return WorkflowConfig.model_validate(data)
        except PydanticValidationError as e:
            violations = format_violations(e)
            formatted = "\n".join(f"  - {v}" for v in violations)
            raise ConfigurationError(
                f"Descriptor validation failed in '{source}':\n{formatted}",
                suggestion="Check the descriptor against the schema. "
                "Ensure all required fields are present and have valid values.",
                file_path=file_path,
                field_path=_first_location(e),
                violations=violations,
            ) from e

    def _parse_yaml(self, content: str, source: str, file_path: str | None) -> Any:
        try:
            return self._yaml.load(content)
        except YAMLError as e:
            line_number = None
            line_info = ""
            mark = getattr(e, "problem_mark", None)
            if mark is not None:
                line_number = mark.line + 1
                line_info = f" at line {line_number}, column {mark.column + 1}"
            raise ConfigurationError(
                f"Invalid YAML syntax in '{source}'{line_info}: {e}",
                suggestion="Check the YAML syntax. Common issues include incorrect "
                "indentation, missing colons, or unquoted special characters.",
                file_path=file_path,
                line_number=line_number,
            ) from e

    @staticmethod
    def _parse_json(content: str, source: str, file_path: str | None) -> Any:
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON syntax in '{source}' at line {e.lineno}, column {e.colno}: "
                f"{e.msg}",
                suggestion="Check for trailing commas, unquoted keys or single quotes.",
                file_path=file_path,
                line_number=e.lineno,
            ) from e


def load_config(path: str | Path) -> WorkflowConfig:
    """Load and schema-validate a descriptor file."""
    return ConfigLoader().load(path)


def load_config_string(content: str, source_path: Path | None = None) -> WorkflowConfig:
    """Load and schema-validate descriptor text."""
    return ConfigLoader().load_string(content, source_path)
