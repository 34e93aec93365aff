# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Offline echo adapter.

Answers without any network access, for dry runs, demos and tests.

Agent parameters understood:
- ``response``: Text to return. Mappings and lists are returned as JSON.
  Defaults to the rendered prompt.
- ``delay``: Seconds to wait before answering.
- ``fail_with``: Error code (e.g. 'LLM_TIMEOUT') to fail every call with.
"""

from __future__ import annotations

import asyncio
import json
import logging

from agentflow.exceptions import FailureKind, FailureSignal
from agentflow.providers.base import BackendAdapter, BackendRequest, BackendResponse

logger = logging.getLogger(__name__)

_KINDS_BY_CODE = {kind.error_code: kind for kind in FailureKind}


class EchoAdapter(BackendAdapter):
    """Deterministic adapter that never leaves the process.

    Example:
        >>> adapter = EchoAdapter(binding)
        >>> (await adapter.invoke(request, timeout=1)).text == request.prompt
        True
    """

    name = "echo"

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        delay = float(request.parameters.get("delay", 0) or 0)
        if delay > 0:
            await asyncio.sleep(delay)

        fail_with = request.parameters.get("fail_with")
        if fail_with:
            kind = _KINDS_BY_CODE.get(str(fail_with), FailureKind.BACKEND_ERROR)
            raise FailureSignal(kind, f"Simulated {fail_with} from echo LLM '{self.llm_id}'")

        response = request.parameters.get("response", request.prompt)
        if isinstance(response, (dict, list)):
            text = json.dumps(response)
        else:
            text = str(response)

        logger.debug("Echo LLM '%s' answered step '%s'", self.llm_id, request.step_id)
        return BackendResponse(text=text, raw_response=response, model=self.binding.model)

    async def validate_connection(self) -> bool:
        return True

    async def close(self) -> None:
        pass
