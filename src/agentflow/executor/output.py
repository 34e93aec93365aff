"""Output parsing and mapping for backend responses.

This module turns a backend's raw response text into the values a step
writes to the execution context.
"""

from __future__ import annotations

import json
import re
from typing import Any

from agentflow.exceptions import FailureKind, FailureSignal

_JSON_BLOCK = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def parse_json_output(raw_response: str) -> dict[str, Any]:
    """Parse JSON from a backend's raw response.

    Attempts to extract JSON from the response, handling common cases
    like markdown code blocks and leading prose.

    Args:
        raw_response: The raw text response from the backend.

    Returns:
        Parsed JSON as a dictionary. Non-object JSON is wrapped as
        ``{"result": value}``.

    Raises:
        FailureSignal: With kind INVALID_RESPONSE if JSON parsing fails.
    """
    text = raw_response.strip()

    json_block_match = _JSON_BLOCK.search(text)
    if json_block_match:
        text = json_block_match.group(1).strip()

    if not text.startswith(("{", "[")):
        obj_start = text.find("{")
        arr_start = text.find("[")

        if obj_start >= 0 and (arr_start < 0 or obj_start < arr_start):
            text = text[obj_start:]
        elif arr_start >= 0:
            text = text[arr_start:]

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        raise FailureSignal(
            FailureKind.INVALID_RESPONSE,
            f"Failed to parse JSON from backend response: {e}",
            suggestion="Ask the model to answer with a JSON object in the agent prompt",
        ) from e

    if isinstance(result, dict):
        return result
    return {"result": result}


def _try_parse_object(raw_response: str) -> dict[str, Any] | None:
    """Return the response as a JSON object, or None if it is not one."""
    try:
        parsed = parse_json_output(raw_response)
    except FailureSignal:
        return None
    return parsed


def map_outputs(
    raw_response: str,
    output_keys: list[str],
    *,
    step_id: str,
    llm_id: str | None = None,
    output_format: str = "text/plain",
) -> dict[str, Any]:
    """Map a backend response onto a step's declared output keys.

    Rules:
    - No output keys: nothing is written.
    - One output key: the value under that key when the response is a JSON
      object containing it, otherwise the whole response text.
    - Several output keys: the response must be a JSON object holding every
      key.

    Args:
        raw_response: The response text.
        output_keys: The step's declared output keys.
        step_id: Step identifier, for error messages.
        llm_id: LLM binding that produced the response, for error messages.
        output_format: The binding's declared output content type.

    Returns:
        Mapping of output key to value.

    Raises:
        FailureSignal: With kind INVALID_RESPONSE if the response is empty
            or lacks a declared key.

    Example:
        >>> map_outputs("Paris", ["answer"], step_id="step-1")
        {'answer': 'Paris'}
        >>> map_outputs('{"a": 1, "b": 2}', ["a", "b"], step_id="step-1")
        {'a': 1, 'b': 2}
    """
    if not output_keys:
        return {}

    if not raw_response or not raw_response.strip():
        raise FailureSignal(
            FailureKind.INVALID_RESPONSE,
            f"Backend returned an empty response for step '{step_id}'",
            llm_id=llm_id,
        )

    expects_json = output_format == "application/json"

    if len(output_keys) == 1:
        key = output_keys[0]
        if expects_json:
            parsed = parse_json_output(raw_response)
            return {key: parsed.get(key, parsed)}
        parsed_obj = None
        if raw_response.lstrip().startswith(("{", "```")):
            parsed_obj = _try_parse_object(raw_response)
        if parsed_obj is not None and key in parsed_obj:
            return {key: parsed_obj[key]}
        return {key: raw_response.strip()}

    try:
        parsed = parse_json_output(raw_response)
    except FailureSignal as e:
        raise FailureSignal(
            FailureKind.INVALID_RESPONSE,
            f"Step '{step_id}' declares outputs {output_keys} "
            "but the response is not a JSON object",
            llm_id=llm_id,
            suggestion="Ask the model to answer with a JSON object holding every output key",
        ) from e

    missing = [key for key in output_keys if key not in parsed]
    if missing:
        raise FailureSignal(
            FailureKind.INVALID_RESPONSE,
            f"Response for step '{step_id}' is missing output key(s): {', '.join(missing)}",
            llm_id=llm_id,
        )

    return {key: parsed[key] for key in output_keys}
