"""Secret resolution collaborator.

The gateway only ever asks a resolver for a named secret; where the value
comes from (keyring, vault, environment) is the orchestrator's choice.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from dotenv import dotenv_values


@runtime_checkable
class SecretResolver(Protocol):
    def get_secret(self, name: str) -> str | None: ...


class MappingSecrets:
    """Resolve secrets from an in-memory mapping."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get_secret(self, name: str) -> str | None:
        return self._values.get(name) or None


class EnvSecrets:
    """Resolve secrets from the process environment, overlaid on an optional .env file."""

    def __init__(self, env_path: str | Path | None = ".env") -> None:
        self._file_values: dict[str, str] = {}
        if env_path is not None and Path(env_path).exists():
            self._file_values = {k: v for k, v in dotenv_values(env_path).items() if v is not None}

    def get_secret(self, name: str) -> str | None:
        if not name:
            return None
        return os.environ.get(name) or self._file_values.get(name) or None
