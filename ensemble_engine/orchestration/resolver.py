"""
Reference resolver for ``${scope.path}`` interpolation.

The resolver implements a small explicit grammar rather than generic string
evaluation. A string is scanned into literal text and tokens; each token is a
scope name followed by a dot-separated path:

    ${input.user.name}        value from the run input
    ${state.counter}          value from the step's state read view
    ${env.API_BASE}           environment binding
    ${steps.fetch.items.0}    output recorded for an earlier step

Resolution rules:
    - a string made of exactly one token resolves to the native value
    - any other mix of tokens and text resolves to a concatenated string
    - whitespace inside a token is trimmed before lookup
    - an empty token (``${}``) or a missing path segment is an InterpolationError
    - an unterminated ``${`` is kept as literal text

The resolver is stateless; it never mutates the scopes or the template.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from ..errors import InterpolationError

logger = logging.getLogger(__name__)

TOKEN_OPEN = "${"
TOKEN_CLOSE = "}"

SCOPE_INPUT = "input"
SCOPE_STATE = "state"
SCOPE_ENV = "env"
SCOPE_STEPS = "steps"
SCOPES = (SCOPE_INPUT, SCOPE_STATE, SCOPE_ENV, SCOPE_STEPS)


@dataclass(frozen=True)
class Token:
    """A ``${...}`` token found in a string."""

    expression: str  # raw text between the braces

    @property
    def reference(self) -> str:
        return self.expression.strip()


Segment = Union[str, Token]


def scan(text: str) -> List[Segment]:
    """Split a string into literal text and tokens.

    Args:
        text: Template string

    Returns:
        Ordered list of literal strings and Token instances
    """
    segments: List[Segment] = []
    position = 0
    while position < len(text):
        start = text.find(TOKEN_OPEN, position)
        if start == -1:
            break
        end = text.find(TOKEN_CLOSE, start + len(TOKEN_OPEN))
        if end == -1:
            break
        if start > position:
            segments.append(text[position:start])
        segments.append(Token(text[start + len(TOKEN_OPEN):end]))
        position = end + len(TOKEN_CLOSE)
    if position < len(text):
        segments.append(text[position:])
    return segments


def has_tokens(value: Any) -> bool:
    """Check whether a string contains at least one token."""
    return isinstance(value, str) and any(isinstance(s, Token) for s in scan(value))


def split_reference(reference: str) -> Tuple[str, str]:
    """Split a trimmed reference into (scope, path).

    Raises:
        InterpolationError: If the reference or its path is empty
    """
    if not reference:
        raise InterpolationError("", "", "empty reference path")
    scope, _, path = reference.partition(".")
    if not path:
        raise InterpolationError(scope, "", "empty reference path")
    return scope, path


def iter_references(tree: Any) -> Iterator[Tuple[str, str]]:
    """Yield (scope, path) for every well-formed token inside a configuration tree.

    Empty tokens are skipped; they fail at resolution time instead.
    """
    if isinstance(tree, str):
        for segment in scan(tree):
            if isinstance(segment, Token) and segment.reference:
                scope, _, path = segment.reference.partition(".")
                yield scope, path
    elif isinstance(tree, Mapping):
        for value in tree.values():
            yield from iter_references(value)
    elif isinstance(tree, (list, tuple)):
        for item in tree:
            yield from iter_references(item)


def find_references(tree: Any) -> List[Tuple[str, str]]:
    """Collect every (scope, path) reference of a configuration tree in order."""
    return list(iter_references(tree))


def to_text(value: Any) -> str:
    """Canonical string form used when a token is embedded in literal text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False, sort_keys=True)
    return str(value)


class ReferenceResolver:
    """Resolves ``${scope.path}`` references against input, state, env and step outputs."""

    def __init__(self, scopes: Tuple[str, ...] = SCOPES):
        self.scopes = scopes

    def resolve(
        self,
        template: Any,
        input: Optional[Mapping] = None,
        state: Optional[Mapping] = None,
        env: Optional[Mapping] = None,
        steps: Optional[Mapping] = None,
    ) -> Any:
        """Resolve every token in a template tree.

        Args:
            template: String, mapping, sequence or scalar to resolve
            input: Run input scope
            state: State scope (usually a step's read view)
            env: Environment bindings scope
            steps: Recorded step outputs keyed by step id

        Returns:
            A new tree with every token replaced

        Raises:
            InterpolationError: On empty or unresolvable references
            StateAccessViolation: When a read view rejects a state key
        """
        scopes = {
            SCOPE_INPUT: input if input is not None else {},
            SCOPE_STATE: state if state is not None else {},
            SCOPE_ENV: env if env is not None else {},
            SCOPE_STEPS: steps if steps is not None else {},
        }
        return self.resolve_with(template, scopes)

    def resolve_with(self, template: Any, scopes: Mapping[str, Any]) -> Any:
        """Resolve a template tree against an explicit scope mapping."""
        if isinstance(template, str):
            return self._resolve_string(template, scopes)
        if isinstance(template, Mapping):
            return {key: self.resolve_with(value, scopes) for key, value in template.items()}
        if isinstance(template, list):
            return [self.resolve_with(item, scopes) for item in template]
        if isinstance(template, tuple):
            return tuple(self.resolve_with(item, scopes) for item in template)
        return template

    def lookup(self, reference: str, scopes: Mapping[str, Any]) -> Any:
        """Look up a single trimmed reference such as ``input.user.name``."""
        scope, path = split_reference(reference)
        if scope not in self.scopes or scope not in scopes:
            raise InterpolationError(scope, path, "unknown scope")

        current = scopes[scope]
        for index, segment in enumerate(path.split(".")):
            if not segment:
                raise InterpolationError(scope, path, "empty path segment")
            current = self._step_into(current, segment, scope, path, index)
        return current

    def _resolve_string(self, text: str, scopes: Mapping[str, Any]) -> Any:
        segments = scan(text)
        if len(segments) == 1 and isinstance(segments[0], Token):
            value = self.lookup(segments[0].reference, scopes)
            return copy.deepcopy(value) if isinstance(value, (Mapping, list)) else value

        if not any(isinstance(segment, Token) for segment in segments):
            return text

        parts = []
        for segment in segments:
            if isinstance(segment, Token):
                parts.append(to_text(self.lookup(segment.reference, scopes)))
            else:
                parts.append(segment)
        return "".join(parts)

    @staticmethod
    def _step_into(current: Any, segment: str, scope: str, path: str, index: int) -> Any:
        if isinstance(current, Mapping):
            try:
                return current[segment]
            except KeyError:
                raise InterpolationError(
                    scope, path, f"'{segment}' not found"
                ) from None

        if isinstance(current, (list, tuple)):
            if not (segment.isascii() and segment.isdigit()):
                raise InterpolationError(
                    scope, path, f"'{segment}' is not a valid sequence index"
                )
            position = int(segment)
            if position >= len(current):
                raise InterpolationError(
                    scope, path, f"index {position} out of range (length {len(current)})"
                )
            return current[position]

        raise InterpolationError(
            scope,
            path,
            f"cannot read '{segment}' from {type(current).__name__} at segment {index}",
        )


def resolve(template: Any, context: Optional[Dict[str, Any]] = None) -> Any:
    """Resolve a template against a ``{"input": ..., "state": ..., ...}`` mapping.

    Convenience wrapper around ReferenceResolver for one-off resolution.
    """
    context = context or {}
    return ReferenceResolver().resolve(
        template,
        input=context.get(SCOPE_INPUT),
        state=context.get(SCOPE_STATE),
        env=context.get(SCOPE_ENV),
        steps=context.get(SCOPE_STEPS),
    )
