"""
Shared validation utilities for capability registration.

Handlers are checked once when they are wrapped into a Capability; problems
that do not prevent registration are only logged.
"""

import logging
import re
import weakref
from typing import Any, Callable, get_type_hints

# =============================================================================
# TYPE HINTS CACHE - Avoids expensive re-parsing of type hints
# =============================================================================
# Keyed by the plain function, so bound methods share their function's entry
_type_hints_cache: "weakref.WeakKeyDictionary[Callable, dict]" = weakref.WeakKeyDictionary()

# Capability names are dotted identifiers: "vault.listNotes", "tasks.byTag"
_CAPABILITY_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

# "    name (type): description" or "    name: description" inside an Args: block
_ARG_LINE = re.compile(r"^\s*(\w+)(?:\s*\([^)]*\))?\s*:\s*(.+?)\s*$")
_SECTION_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters|Returns|Raises|Yields|Example|Examples|Note|Notes)\s*:\s*$")


def get_cached_type_hints(func: Callable) -> dict:
    """
    Get type hints for a function with caching.

    Args:
        func: Function to get type hints for

    Returns:
        dict: Type hints for the function (empty dict if resolution fails)
    """
    key = getattr(func, "__func__", func)
    try:
        return _type_hints_cache[key]
    except (KeyError, TypeError):
        pass

    try:
        hints = get_type_hints(key)
    except Exception:
        # ForwardRef resolution, circular imports, builtins without hints
        hints = {}
    try:
        _type_hints_cache[key] = hints
    except TypeError:
        # Not weak-referenceable; skip caching
        pass
    return hints


def validate_callable(func: Any, name: str, logger: logging.Logger) -> bool:
    """
    Validate that a capability handler is callable.

    Args:
        func: Object to validate
        name: Capability name for the error message
        logger: Logger instance for errors

    Returns:
        True if valid, False otherwise
    """
    if not callable(func):
        logger.error(
            "Capability '%s' needs a callable handler, got %s",
            name,
            type(func).__name__,
        )
        return False
    return True


def validate_capability_name(name: Any, logger: logging.Logger) -> bool:
    """Capability names must be non-empty dotted identifiers."""
    if not isinstance(name, str) or not _CAPABILITY_NAME.match(name):
        logger.error("Invalid capability name: %r", name)
        return False
    return True


def check_docstring(func: Callable, name: str, logger: logging.Logger) -> bool:
    """
    Check if a handler has a docstring, warn if missing.

    Returns:
        True (always - this is just a warning, not a validation failure)
    """
    if not func.__doc__:
        logger.warning("'%s' has no docstring - description will be empty", name)
    return True


def parse_arg_descriptions(doc: str | None) -> dict[str, str]:
    """
    Pull parameter descriptions out of a Google-style ``Args:`` section.

    Args:
        doc: Raw docstring (may be None)

    Returns:
        dict: parameter name -> one-line description
    """
    if not doc:
        return {}

    descriptions: dict[str, str] = {}
    in_args = False
    for line in doc.splitlines():
        header = _SECTION_HEADER.match(line)
        if header:
            in_args = header.group(1) in ("Args", "Arguments", "Parameters")
            continue
        if not in_args or not line.strip():
            continue
        match = _ARG_LINE.match(line)
        if match:
            descriptions[match.group(1)] = match.group(2)
    return descriptions


def first_paragraph(doc: str | None) -> str:
    """Summary part of a docstring, used as the capability description."""
    if not doc:
        return ""
    lines = []
    for line in doc.strip().splitlines():
        if not line.strip():
            break
        lines.append(line.strip())
    return " ".join(lines)
