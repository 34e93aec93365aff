# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Jinja2 rendering for agent prompts and template conditions.

Prompts (``parameters.prompt`` and ``parameters.system_prompt``) and
``{{ ... }}`` step conditions share one environment. Rendering is strict:
a name the step did not declare as an input raises instead of rendering
as an empty string.
"""

from __future__ import annotations

import json
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateSyntaxError, meta
from jinja2 import UndefinedError as Jinja2UndefinedError

from agentflow.exceptions import TemplateError

_TRUE_WORDS = frozenset({"true", "1", "yes"})
_FALSE_WORDS = frozenset({"false", "0", "no", "", "none"})


def is_template(text: str) -> bool:
    """Return True if ``text`` uses Jinja2 expression syntax."""
    return "{{" in text and "}}" in text


def _to_json(value: Any, indent: int = 2) -> str:
    return json.dumps(value, indent=indent, default=str)


def _or_default(value: Any, default: Any = "") -> Any:
    # Unlike Jinja2's builtin, replaces None as well as undefined
    return default if value is None else value


class TemplateRenderer:
    """Renders prompt templates against a step's input namespace.

    Filters available on top of the Jinja2 builtins:

    - ``json``: serialize a value (lists and mappings from upstream steps)
    - ``default``: substitute a value for None, e.g. an absent optional input
    """

    def __init__(self) -> None:
        self.env = Environment(
            loader=BaseLoader(),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters["json"] = _to_json
        self.env.filters["default"] = _or_default

    def check_syntax(self, template: str) -> None:
        """Parse a template without rendering it.

        Raises:
            TemplateError: If the template has a syntax error.
        """
        try:
            self.env.parse(template)
        except TemplateSyntaxError as e:
            raise TemplateError(
                f"Template syntax error: {e.message}",
                line_number=e.lineno,
                template_string=template,
            ) from e

    def referenced_names(self, template: str) -> set[str]:
        """Return the free variable names a template reads.

        Raises:
            TemplateError: If the template has a syntax error.
        """
        self.check_syntax(template)
        return set(meta.find_undeclared_variables(self.env.parse(template)))

    def render(self, template: str, variables: dict[str, Any]) -> str:
        """Render a template with a step's variables.

        Args:
            template: Jinja2 template string.
            variables: The step namespace: declared input keys plus ``inputs``
                and ``step_id``.

        Returns:
            The rendered text.

        Raises:
            TemplateError: If a name is undefined, the syntax is invalid or a
                filter fails.
        """
        try:
            return self.env.from_string(template).render(**variables)
        except Jinja2UndefinedError as e:
            raise TemplateError(
                f"Undefined variable in template: {e}",
                template_string=template,
                undefined_variable=_undefined_name(str(e)),
            ) from e
        except TemplateSyntaxError as e:
            raise TemplateError(
                f"Template syntax error: {e.message}",
                line_number=e.lineno,
                template_string=template,
            ) from e
        except Exception as e:
            raise TemplateError(
                f"Template rendering failed: {e}",
                suggestion="Check the filters and values used by the template",
                template_string=template,
            ) from e

    def evaluate_condition(self, expression: str, variables: dict[str, Any]) -> bool:
        """Render a ``{{ ... }}`` condition and read the result as a boolean.

        "true", "1" and "yes" are true; "false", "0", "no", "none" and the
        empty string are false. Any other text is true.

        Raises:
            TemplateError: If rendering fails.
        """
        text = self.render(expression, variables).strip().lower()
        if text in _TRUE_WORDS:
            return True
        if text in _FALSE_WORDS:
            return False
        return True


def _undefined_name(error_msg: str) -> str:
    """Pull the variable name out of a Jinja2 UndefinedError message.

    Messages read "'name' is undefined" or "'dict object' has no attribute
    'name'".
    """
    parts = error_msg.split("'")
    if "has no attribute" in error_msg and len(parts) >= 4:
        return parts[3]
    if len(parts) >= 2:
        return parts[1]
    return "unknown"
