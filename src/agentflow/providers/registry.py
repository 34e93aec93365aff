# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Adapter registry for multi-backend workflows.

This module provides the AdapterRegistry class for managing one adapter per
LLM binding with lazy instantiation and caching.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from agentflow.providers.base import BackendAdapter
from agentflow.providers.factory import create_adapter

if TYPE_CHECKING:
    from agentflow.config.schema import LLMDef
    from agentflow.config.secrets import SecretStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[["LLMDef"], BackendAdapter]


class AdapterRegistry:
    """Manages adapter instances with lazy instantiation and caching.

    Adapters are created on first use of their LLM binding and reused for
    every later call to that binding.

    Example:
        >>> async with AdapterRegistry() as registry:
        ...     adapter = registry.get_adapter(graph.llm("llm-gpt4"))
        ...     response = await adapter.invoke(request, timeout=30)

    Key behaviors:
    - **Lazy creation**: Adapters created on first call to their binding
    - **Caching**: One adapter per llmId
    - **Lifecycle management**: Closes all adapters on close()
    """

    def __init__(
        self,
        secrets: SecretStore | None = None,
        factory: AdapterFactory | None = None,
        adapters: dict[str, BackendAdapter] | None = None,
    ) -> None:
        """Initialize the AdapterRegistry.

        Args:
            secrets: Secret store passed to adapters created by the default factory.
            factory: Optional callable building an adapter for a binding.
            adapters: Pre-built adapters keyed by llmId, used instead of the factory.
        """
        self._secrets = secrets
        self._factory = factory
        self._adapters: dict[str, BackendAdapter] = dict(adapters or {})

    def get_adapter(self, binding: LLMDef) -> BackendAdapter:
        """Get the adapter for a binding, creating it if necessary.

        Raises:
            ConfigurationError: If the binding's provider cannot be resolved.
        """
        adapter = self._adapters.get(binding.llm_id)
        if adapter is None:
            if self._factory is not None:
                adapter = self._factory(binding)
            else:
                adapter = create_adapter(binding, self._secrets)
            logger.debug("Created %s adapter for LLM '%s'", adapter.name, binding.llm_id)
            self._adapters[binding.llm_id] = adapter
        return adapter

    def register(self, llm_id: str, adapter: BackendAdapter) -> None:
        """Use a specific adapter for a binding."""
        self._adapters[llm_id] = adapter

    def get_active_adapters(self) -> dict[str, BackendAdapter]:
        return self._adapters.copy()

    def is_adapter_active(self, llm_id: str) -> bool:
        return llm_id in self._adapters

    async def close(self) -> None:
        """Close all adapter instances.

        Every adapter is closed even if some fail; the first error is
        re-raised afterwards.
        """
        errors: list[Exception] = []
        for llm_id, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning("Failed to close adapter for LLM '%s': %s", llm_id, e)
                errors.append(e)

        self._adapters.clear()

        if errors:
            raise errors[0]

    async def __aenter__(self) -> AdapterRegistry:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
