"""
Sandboxed evaluation of user-supplied CUSTOM_FUNCTION transforms.

A custom function is a Jinja2 expression evaluated with a single name bound:
``value``. Examples::

    value | upper
    value ~ " (VIP)"
    (value | float * 1.2) | round(2)
    value.split("@")[1] if value else ""

The ImmutableSandboxedEnvironment blocks attribute access to internals and any
mutation of the value. Nothing else (storage handles, clients, env) is reachable
from inside an expression.
"""

import logging
from functools import lru_cache
from typing import Any, Callable, Optional

from jinja2 import TemplateSyntaxError
from jinja2.sandbox import ImmutableSandboxedEnvironment, SecurityError

logger = logging.getLogger(__name__)

_env = ImmutableSandboxedEnvironment()


@lru_cache(maxsize=256)
def compile_custom_function(source: str) -> Callable[..., Any]:
    """Compile an expression once. Raises TemplateSyntaxError on bad input."""
    return _env.compile_expression(source, undefined_to_none=True)


def check_custom_function(source: Optional[str]) -> Optional[str]:
    """Return an error message if the expression does not compile, else None."""
    if not source or not str(source).strip():
        return "Custom function is required"
    try:
        compile_custom_function(str(source))
    except TemplateSyntaxError as e:
        return f"Custom function does not compile: {e.message}"
    return None


def run_custom_function(source: Optional[str], value: Any) -> Any:
    """Evaluate an expression against a value. Any failure returns the value unchanged."""
    if not source:
        return value
    try:
        fn = compile_custom_function(str(source))
        return fn(value=value)
    except SecurityError as e:
        logger.warning(f"Custom function blocked by sandbox: {e}")
        return value
    except Exception as e:
        logger.debug(f"Custom function error, passing value through: {e}")
        return value
