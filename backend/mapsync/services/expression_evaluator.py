from __future__ import annotations

import threading
from typing import Any, Mapping

from mapsync.core.config import settings
from mapsync.core.errors import ExpressionError
from mapsync.services.expression_parser import (
    CaseNode,
    ExpressionParser,
    FunctionCallNode,
    LiteralNode,
    Node,
    PathNode,
    PipeNode,
)
from mapsync.services.transforms import TransformRegistry, as_text, default_registry, is_scalar


class ExpressionEvaluator:
    """
    Evaluates mapping expressions such as

        afs.Artikel.Bezeichnung | trim | null_if_empty | default:$func.concat(afs.Artikel.Nr, ' ', 'x')

    against a nested read-only context. Parsed expressions are cached per instance.
    """

    def __init__(self, registry: TransformRegistry | None = None, max_depth: int | None = None) -> None:
        self.registry = registry or default_registry()
        self.max_depth = int(max_depth or settings.expression_max_depth)
        self._cache: dict[str, Node] = {}
        self._cache_lock = threading.Lock()

    def parse(self, expression: str) -> Node:
        """Parse and validate an expression (pipe/function names and arity)."""
        with self._cache_lock:
            cached = self._cache.get(expression)
        if cached is not None:
            return cached
        try:
            node = ExpressionParser(self.max_depth).parse(expression)
            self._validate(node)
        except ExpressionError as exc:
            if exc.expression is None:
                raise ExpressionError(str(exc), expression) from exc
            raise
        with self._cache_lock:
            self._cache[expression] = node
        return node

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        node = self.parse(expression)
        try:
            value = self._eval(node, context)
        except ExpressionError as exc:
            if exc.expression is None:
                raise ExpressionError(str(exc), expression) from exc
            raise
        if not is_scalar(value):
            raise ExpressionError(f'expression produced a non-scalar {type(value).__name__}', expression)
        return value

    def _validate(self, node: Node) -> None:
        if isinstance(node, FunctionCallNode):
            spec = self.registry.function(node.name)
            count = len(node.arguments)
            if count < spec.min_args or (spec.max_args is not None and count > spec.max_args):
                raise ExpressionError(f'$func.{node.name} {_arity_text(spec.min_args, spec.max_args)}, got {count}')
            for argument in node.arguments:
                self._validate(argument)
        elif isinstance(node, PipeNode):
            spec = self.registry.pipe(node.name)
            count = len(node.arguments)
            if count < spec.min_args or count > spec.max_args:
                raise ExpressionError(f'pipe {node.name!r} {_arity_text(spec.min_args, spec.max_args)}, got {count}')
            self._validate(node.source)
            for argument in node.arguments:
                self._validate(argument)
        elif isinstance(node, CaseNode):
            self._validate(node.source)
            for _, result in node.arms:
                self._validate(result)
            if node.otherwise is not None:
                self._validate(node.otherwise)

    def _eval(self, node: Node, context: Mapping[str, Any]) -> Any:
        if isinstance(node, LiteralNode):
            return node.value
        if isinstance(node, PathNode):
            return _resolve_path(node.segments, context)
        if isinstance(node, FunctionCallNode):
            spec = self.registry.function(node.name)
            arguments = [self._eval(argument, context) for argument in node.arguments]
            return _call(f'$func.{node.name}', spec.func, *arguments)
        if isinstance(node, PipeNode):
            value = self._eval(node.source, context)
            spec = self.registry.pipe(node.name)
            if spec.lazy:
                argument = node.arguments[0]
                return _call(node.name, spec.func, value, lambda: self._eval(argument, context))
            arguments = [self._eval(argument, context) for argument in node.arguments]
            return _call(node.name, spec.func, value, *arguments)
        if isinstance(node, CaseNode):
            value = self._eval(node.source, context)
            for key, result in node.arms:
                if _case_matches(value, key):
                    return self._eval(result, context)
            return self._eval(node.otherwise, context) if node.otherwise is not None else value
        raise ExpressionError(f'unsupported expression node {type(node).__name__}')


def _resolve_path(segments: tuple[str, ...], context: Mapping[str, Any]) -> Any:
    current: Any = context
    for segment in segments:
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            return None
    return current


def _call(name: str, func, *args: Any) -> Any:
    try:
        return func(*args)
    except ExpressionError:
        raise
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise ExpressionError(f'{name} failed: {exc}') from exc


def _case_matches(value: Any, key: Any) -> bool:
    if isinstance(key, bool):
        return (as_text(value).strip().lower() in ('1', 'true')) is key
    if key is None:
        return value is None
    return as_text(value) == as_text(key)


def _arity_text(min_args: int, max_args: int | None) -> str:
    if max_args is None:
        return f'expects at least {min_args} argument(s)'
    if min_args == max_args:
        return f'expects {min_args} argument(s)'
    return f'expects {min_args} to {max_args} argument(s)'
