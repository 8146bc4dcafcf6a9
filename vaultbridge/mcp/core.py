"""
Capability registry.

A Capability is a named operation with metadata and an async invoke function.
Handlers are wrapped with ``Capability.from_function``, which derives the
input schema from the signature, type hints and docstring ``Args:`` section.
"""

import functools
import inspect
import types
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Union, get_args, get_origin

import anyio.to_thread

from .errors import (
    BridgeError,
    DuplicateName,
    InvalidParams,
    InvocationError,
    UnknownCapability,
)
from .logger import get_logger
from .utils import validators

logger = get_logger("vaultbridge-core")

Invoke = Callable[[dict], Awaitable[Any]]


_NULL = type(None)

_SCALAR_SCHEMAS = {
    str: {"type": "string"},
    bool: {"type": "boolean"},
    int: {"type": "integer"},
    float: {"type": "number"},
    _NULL: {"type": "null"},
}


def _union_schema(members: tuple) -> dict:
    concrete = [member for member in members if member is not _NULL]
    nullable = len(concrete) < len(members)
    if not concrete:
        return {"type": "null"}
    if len(concrete) == 1 and not nullable:
        return _type_to_schema(concrete[0])
    options = [_type_to_schema(member) for member in concrete]
    if nullable:
        options.append({"type": "null"})
    return {"anyOf": options}


def _type_to_schema(annotation: Any) -> dict:
    """JSON Schema fragment for one parameter annotation; unknown types become strings."""
    if annotation is Any:
        return {}
    if annotation in _SCALAR_SCHEMAS:
        return dict(_SCALAR_SCHEMAS[annotation])

    origin = get_origin(annotation) or annotation
    args = get_args(annotation)

    if origin is Union or isinstance(annotation, types.UnionType):
        return _union_schema(args)
    if origin is list:
        return {"type": "array", "items": _type_to_schema(args[0])} if args else {"type": "array"}
    if origin is dict:
        if len(args) == 2:
            return {"type": "object", "additionalProperties": _type_to_schema(args[1])}
        return {"type": "object"}
    if origin is tuple:
        if not args:
            return {"type": "array"}
        # Fixed-length tuples only; tuple[int, ...] is not used by handlers
        return {
            "type": "array",
            "prefixItems": [_type_to_schema(arg) for arg in args],
            "minItems": len(args),
            "maxItems": len(args),
        }
    return {"type": "string"}


def generate_schema(func: Callable[..., Any]) -> dict:
    """
    Input schema for a handler.

    Parameters without a default are required. Unless the handler takes
    ``**kwargs``, unknown arguments are rejected by the schema
    (``additionalProperties: false``). Descriptions come from the
    docstring's ``Args:`` section.
    """
    signature = inspect.signature(func)
    hints = validators.get_cached_type_hints(func)
    descriptions = validators.parse_arg_descriptions(func.__doc__)

    properties: dict[str, dict] = {}
    required: list[str] = []
    open_ended = False

    for name, param in signature.parameters.items():
        if param.kind is param.VAR_KEYWORD:
            open_ended = True
            continue
        if name in ("self", "cls") or param.kind is param.VAR_POSITIONAL:
            continue

        prop = _type_to_schema(hints.get(name, Any))
        if name in descriptions:
            prop["description"] = descriptions[name]
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)

    schema: dict = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    if not open_ended:
        schema["additionalProperties"] = False
    return schema


@dataclass(frozen=True)
class Capability:
    """Named operation exposed to clients."""

    name: str
    description: str
    invoke: Invoke = field(repr=False, compare=False)
    input_schema: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}, compare=False
    )

    def metadata(self) -> dict:
        """Tool definition in MCP format."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    @classmethod
    def from_function(
        cls,
        handler: Callable[..., Any],
        name: str,
        description: str | None = None,
    ) -> "Capability":
        """
        Wrap a plain function as a capability.

        Coroutine functions are awaited on the event loop; anything else runs
        in a worker thread so blocking file access does not stall the loop.
        A handler may also return an awaitable, which is awaited.

        Args:
            handler: Function whose keyword parameters are the capability params
            name: Capability name (e.g. "vault.listNotes")
            description: Overrides the docstring summary

        Raises:
            ValueError: If the name or handler is invalid
        """
        if not (
            validators.validate_capability_name(name, logger)
            and validators.validate_callable(handler, name, logger)
        ):
            raise ValueError(f"Cannot build capability {name!r}")
        if description is None:
            validators.check_docstring(handler, name, logger)
            description = validators.first_paragraph(handler.__doc__)

        sig = inspect.signature(handler)
        is_async = inspect.iscoroutinefunction(handler)

        async def invoke(params: dict) -> Any:
            try:
                bound = sig.bind(**params)
            except TypeError as e:
                raise InvalidParams(f"Invalid params for {name}: {e}") from None

            if is_async:
                result = await handler(*bound.args, **bound.kwargs)
            else:
                result = await anyio.to_thread.run_sync(
                    functools.partial(handler, *bound.args, **bound.kwargs)
                )
            if inspect.isawaitable(result):
                result = await result
            return result

        return cls(
            name=name,
            description=description,
            invoke=invoke,
            input_schema=generate_schema(handler),
        )


class CapabilityRegistry:
    """
    Registry of capabilities keyed by exact, case-sensitive name.

    Iteration order is registration order.
    """

    def __init__(self, capabilities: list[Capability] | None = None):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities or ():
            self.register(capability)

    def register(self, capability: Capability, replace: bool = False) -> None:
        """
        Add a capability.

        Raises:
            DuplicateName: If the name is taken and ``replace`` is False
        """
        if capability.name in self._capabilities and not replace:
            raise DuplicateName(f"Capability '{capability.name}' already registered")
        if capability.name in self._capabilities:
            logger.debug("Replacing capability: %s", capability.name)
        self._capabilities[capability.name] = capability

    def add(
        self,
        name: str,
        handler: Callable[..., Any],
        description: str | None = None,
        replace: bool = False,
    ) -> Capability:
        """Shorthand for ``register(Capability.from_function(...))``."""
        capability = Capability.from_function(handler, name, description)
        self.register(capability, replace=replace)
        return capability

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def iter_metadata(self) -> Iterator[dict]:
        """Yield tool definitions lazily; each call starts a fresh pass."""
        for capability in list(self._capabilities.values()):
            yield capability.metadata()

    def list_tools(self) -> list[dict]:
        return list(self.iter_metadata())

    async def invoke(self, name: str, params: dict | None = None) -> Any:
        """
        Run a capability by name.

        Raises:
            UnknownCapability: If no capability has this name
            InvalidParams: If params do not match the capability's signature
            InvocationError: If the capability itself fails
        """
        capability = self._capabilities.get(name)
        if capability is None:
            raise UnknownCapability(f"Method not found: {name}")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidParams(f"Invalid params for {name}: expected an object")

        try:
            return await capability.invoke(params)
        except BridgeError:
            raise
        except Exception as e:
            logger.debug("Capability %s raised %s: %s", name, type(e).__name__, e)
            raise InvocationError(str(e) or type(e).__name__) from e
