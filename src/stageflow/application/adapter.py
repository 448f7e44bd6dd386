import copy
import re
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

import msgspec

from stageflow.domain.error import BindingError, DispatchError
from stageflow.domain.port import ExecutorBase
from stageflow.domain.value_object import RequestContext

_MISSING = object()


class ContextPathResolver:
    """Resolves path expressions against a workflow context document.

    Grammar (no filters or functions)::

        path     := ["$" ["."]] segment*
        segment  := ident | "." ident | "[" int "]" | "[" quoted "]"
        ident    := [A-Za-z_][A-Za-z0-9_-]*
        quoted   := '"' chars '"' | "'" chars "'"

    Examples: ``input.client_id``, ``$.input.items[0].sku``,
    ``activities["tpl:create-client"].output.id``. ``$`` alone is the whole document.
    """

    _segment = re.compile(
        r"""(?P<dot>\.)?(?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)"""
        r"""|\[\s*(?P<index>\d+)\s*\]"""
        r"""|\[\s*"(?P<dq>(?:[^"\\]|\\.)*)"\s*\]"""
        r"""|\[\s*'(?P<sq>(?:[^'\\]|\\.)*)'\s*\]"""
    )
    _escape = re.compile(r"\\(.)")

    def parse(self, expr: str) -> list[str | int]:
        """
        Split a path expression into key and index segments.

        :param expr: The path expression
        :type expr: str
        :returns: Segments; strings are object keys and ints are array indexes
        :rtype: list[str | int]
        :raises BindingError: If the expression is malformed
        """
        if not isinstance(expr, str):
            raise BindingError(f"Path expression must be a string, got {type(expr).__name__}")
        text = expr.strip()
        pos = 0
        if text.startswith("$"):
            pos = 1
            if text.startswith("$."):
                pos = 2
                if len(text) == 2:
                    raise BindingError(f"Invalid path expression '{expr}': empty segment after '$.'")
        elif not text:
            raise BindingError("Empty path expression")

        segments: list[str | int] = []
        while pos < len(text):
            m = self._segment.match(text, pos)
            if m is None:
                raise BindingError(f"Invalid path expression '{expr}' at position {pos}")
            if m.group("ident") is not None:
                if m.group("dot") and not segments:
                    raise BindingError(f"Invalid path expression '{expr}': unexpected '.' at position {pos}")
                if not m.group("dot") and segments:
                    raise BindingError(f"Invalid path expression '{expr}': missing '.' at position {pos}")
                segments.append(m.group("ident"))
            elif m.group("index") is not None:
                segments.append(int(m.group("index")))
            else:
                quoted = m.group("dq") if m.group("dq") is not None else m.group("sq")
                segments.append(self._escape.sub(r"\1", quoted))
            pos = m.end()
        return segments

    def lookup(self, document: Any, expr: str) -> Any:
        """
        Return the value addressed by ``expr`` in ``document``.

        :param document: The context document (nested dicts and lists)
        :param expr: The path expression
        :type expr: str
        :returns: The addressed value
        :raises BindingError: If the expression is malformed or does not resolve
        """
        current = document
        walked = "$"
        for seg in self.parse(expr):
            if isinstance(seg, int):
                if isinstance(current, list):
                    if seg >= len(current):
                        raise BindingError(f"Path '{expr}' did not resolve: index {seg} out of range at {walked}")
                    current = current[seg]
                elif isinstance(current, Mapping) and str(seg) in current:
                    current = current[str(seg)]
                else:
                    raise BindingError(f"Path '{expr}' did not resolve: {walked} is not an array")
                walked += f"[{seg}]"
            else:
                if not isinstance(current, Mapping):
                    raise BindingError(f"Path '{expr}' did not resolve: {walked} is not an object")
                if seg not in current:
                    raise BindingError(f"Path '{expr}' did not resolve: no '{seg}' at {walked}")
                current = current[seg]
                walked += f".{seg}"
        return current


class ParameterBinder:
    """Builds an executor request from activity parameter bindings.

    Binding values are interpreted as follows:

    - A string that is exactly one ``${path}`` placeholder returns the referenced
      value as-is (type preserved).
    - A string containing placeholders among other text is interpolated, each
      referenced value converted with ``str``.
    - Any other string is a path expression.
    - A mapping with a ``source`` key is a structured binding with optional
      ``default``, ``required`` (default true) and ``type`` coercion.
    - A mapping with a ``value`` key is a literal.
    - Anything else is a literal constant.

    Target keys containing dots build nested objects (``"user.name"``).
    """

    _pattern = re.compile(r"\$\{([^}]+)\}")

    def __init__(self, resolver: ContextPathResolver | None = None):
        self.resolver = resolver or ContextPathResolver()

    def bind(self, document: Mapping[str, Any], bindings: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Resolve every binding against ``document``.

        :param document: The workflow context document
        :param bindings: Target field to binding specification
        :returns: The bound request
        :rtype: dict[str, Any]
        :raises BindingError: If a required binding cannot be resolved
        """
        request: dict[str, Any] = {}
        for target, spec in (bindings or {}).items():
            value = self.resolve_value(document, spec)
            if value is _MISSING:
                continue
            set_nested(request, target, value)
        return request

    def resolve_value(self, document: Mapping[str, Any], spec: Any) -> Any:
        if isinstance(spec, str):
            if "${" in spec:
                return self._resolve_string(document, spec)
            return copy.deepcopy(self.resolver.lookup(document, spec))
        if isinstance(spec, Mapping):
            if "source" in spec:
                return self._resolve_structured(document, spec)
            if "value" in spec:
                return copy.deepcopy(spec["value"])
        return copy.deepcopy(spec)

    def _resolve_string(self, document: Mapping[str, Any], s: str) -> Any:
        # Exact single-token match => return raw value to preserve type
        m = self._pattern.fullmatch(s.strip())
        if m:
            return copy.deepcopy(self.resolver.lookup(document, m.group(1)))

        def repl(match: re.Match) -> str:
            return str(self.resolver.lookup(document, match.group(1)))

        return self._pattern.sub(repl, s)

    def _resolve_structured(self, document: Mapping[str, Any], spec: Mapping[str, Any]) -> Any:
        try:
            value = self.resolve_value(document, spec["source"])
        except BindingError:
            if "default" in spec:
                value = copy.deepcopy(spec["default"])
            elif spec.get("required", True) is False:
                return _MISSING
            else:
                raise
        if value is None and "default" in spec:
            value = copy.deepcopy(spec["default"])
        type_name = spec.get("type")
        if type_name:
            value = self._coerce(value, str(type_name).lower())
        return value

    def _coerce(self, value: Any, target_type: str) -> Any:
        """Coerces a value to a schema type name, failing with BindingError."""
        if value is None:
            return None
        try:
            if target_type in {"string", "str"}:
                return value if isinstance(value, str) else str(value)
            if target_type in {"integer", "int"}:
                if isinstance(value, bool):
                    raise ValueError("boolean is not an integer")
                if isinstance(value, (Decimal, float)) and value != int(value):
                    raise ValueError(f"{value} is not integral")
                return int(value)
            if target_type in {"number", "float", "decimal"}:
                if isinstance(value, bool):
                    raise ValueError("boolean is not a number")
                if isinstance(value, (int, Decimal)):
                    return value
                return Decimal(str(value).strip())
            if target_type in {"boolean", "bool"}:
                if isinstance(value, bool):
                    return value
                if isinstance(value, str):
                    v = value.strip().lower()
                    if v in {"true", "1", "yes", "y"}:
                        return True
                    if v in {"false", "0", "no", "n"}:
                        return False
                    raise ValueError(f"'{value}' is not a boolean")
                if isinstance(value, int):
                    return value != 0
                raise ValueError(f"{value!r} is not a boolean")
        except (ValueError, TypeError, InvalidOperation) as e:
            raise BindingError(f"Cannot coerce {value!r} to {target_type}: {e}") from e
        # Leave as-is for anything else
        return value


def set_nested(target: dict[str, Any], key: str, value: Any) -> None:
    """
    Set ``value`` at a dotted key, creating intermediate objects.

    :param target: The dictionary to write into
    :param key: A plain or dotted key, e.g. ``user.first_name``
    :param value: The value to store
    """
    *parents, leaf = key.split(".")
    current = target
    for part in parents:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[leaf] = value


class ExecutorTaskRunner:
    """Runs an executor with a bound request at the registry's typed boundary."""

    def run(self, executor: ExecutorBase, ctx: RequestContext, request: dict[str, Any]) -> dict[str, Any]:
        """
        Convert the request to the executor's ``request_type`` (when declared),
        execute, and normalize the response to a dictionary.

        :param executor: The resolved executor
        :type executor: ExecutorBase
        :param ctx: The caller's request context, passed through unchanged
        :type ctx: RequestContext
        :param request: The bound request
        :type request: dict[str, Any]
        :returns: The executor response as a dictionary
        :rtype: dict[str, Any]
        :raises BindingError: If the request does not convert to ``request_type``
        :raises DispatchError: If the executor returns something other than a mapping
        """
        payload: Any = request
        request_type = getattr(executor, "request_type", None)
        if request_type is not None:
            try:
                payload = msgspec.convert(request, type=request_type, strict=False)
            except msgspec.ValidationError as e:
                raise BindingError(f"Request does not match {getattr(request_type, '__name__', request_type)}: {e}") from e

        response = executor.execute(ctx, payload)

        if response is None:
            return {}
        if isinstance(response, msgspec.Struct):
            response = msgspec.to_builtins(response, builtin_types=(Decimal,))
        if not isinstance(response, Mapping):
            raise DispatchError(f"Executor {executor!r} returned {type(response).__name__}, expected a mapping")
        return dict(response)
