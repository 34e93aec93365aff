# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Credential reference resolution.

LLM bindings carry a ``credentialRef`` rather than a secret. A SecretStore
turns that reference into the secret at invocation time; the engine keeps the
resolved value only inside the request for a single backend call.

Reference formats understood by EnvSecretStore:
- ``env:NAME`` - value of environment variable NAME
- ``NAME`` - shorthand for ``env:NAME``
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from agentflow.exceptions import SecretResolutionError


class SecretStore(ABC):
    """Resolves credential references to secrets."""

    @abstractmethod
    def resolve(self, reference: str) -> str:
        """Return the secret for a credential reference.

        Args:
            reference: The credentialRef from an LLM binding.

        Returns:
            The secret value.

        Raises:
            SecretResolutionError: If the reference cannot be resolved.
        """
        ...


class EnvSecretStore(SecretStore):
    """Resolves ``env:NAME`` references from the process environment.

    Example:
        >>> store = EnvSecretStore(environ={"OPENAI_API_KEY": "secret"})
        >>> store.resolve("env:OPENAI_API_KEY")
        'secret'
    """

    PREFIX = "env:"

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        """Initialize the store.

        Args:
            environ: Mapping to read from. Defaults to os.environ, read lazily
                so changes made after construction are seen.
        """
        self._environ = environ

    def resolve(self, reference: str) -> str:
        """Return the environment variable named by the reference."""
        scheme, sep, name = reference.partition(":")
        if not sep:
            name = reference
        elif scheme != "env":
            raise SecretResolutionError(
                f"Unsupported credential reference scheme '{scheme}'",
                reference=reference,
                suggestion="Use 'env:NAME' to reference an environment variable",
            )

        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(name)
        if not value:
            raise SecretResolutionError(
                f"Credential reference '{reference}' could not be resolved",
                reference=reference,
                suggestion=f"Set the environment variable '{name}'",
            )
        return value


class StaticSecretStore(SecretStore):
    """Resolves references from an in-memory mapping.

    Intended for embedding applications that fetch secrets from their own
    vault and for tests.
    """

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    def resolve(self, reference: str) -> str:
        try:
            return self._secrets[reference]
        except KeyError:
            raise SecretResolutionError(
                f"Credential reference '{reference}' is not in the secret store",
                reference=reference,
            ) from None
