"""
Deterministic cache keys for step results.

A key combines the step's member type tag with a hash of its normalized
resolved input, so semantically equivalent inputs collapse to one entry:

- mapping keys are sorted
- designated text fields are trimmed and lowercased
- designated URL fields are reduced to their canonical host
  (``https://WWW.Example.com:443/a?b`` -> ``example.com``)
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlsplit

DEFAULT_TEXT_FIELDS = ("email", "name", "query", "company", "username")
DEFAULT_URL_FIELDS = ("url", "domain", "website", "homepage")


@dataclass(frozen=True)
class CacheKey:
    """Content-based key for a step result.

    Attributes:
        step_type: Member type tag of the step
        input_hash: SHA256 of the normalized input (first 32 hex chars)
        prefix: Namespace prefix shared by all keys of one cache
    """

    step_type: str
    input_hash: str
    prefix: str = ""

    def __str__(self) -> str:
        return f"{self.prefix}{self.step_type}:{self.input_hash}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "step_type": self.step_type,
            "input_hash": self.input_hash,
            "prefix": self.prefix,
        }


def canonical_host(value: str) -> str:
    """Extract the canonical host of a URL-shaped string.

    Scheme, port, path, query and a leading ``www.`` are dropped and the host
    is lowercased. Values without a recognizable host are trimmed and lowercased.
    """
    text = value.strip()
    candidate = text if "://" in text else f"//{text}"
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        host = ""
    host = host.lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host or text.lower()


class CacheKeyBuilder:
    """Normalizes resolved step input and derives cache keys."""

    def __init__(
        self,
        text_fields: Iterable[str] = DEFAULT_TEXT_FIELDS,
        url_fields: Iterable[str] = DEFAULT_URL_FIELDS,
        prefix: str = "",
    ):
        """Initialize key builder.

        Args:
            text_fields: Field names whose string values are trimmed and lowercased
            url_fields: Field names whose string values are reduced to a host
            prefix: Prefix prepended to every key
        """
        self.text_fields = frozenset(field.lower() for field in text_fields)
        self.url_fields = frozenset(field.lower() for field in url_fields)
        self.prefix = prefix

    def normalize(self, value: Any, field: Optional[str] = None) -> Any:
        """Return the normalized form of a value.

        Args:
            value: Resolved input (or a nested part of it)
            field: Name of the mapping field holding the value, if any

        Returns:
            Normalized copy; the input is never modified
        """
        if isinstance(value, Mapping):
            return {
                str(key): self.normalize(value[key], str(key))
                for key in sorted(value, key=str)
            }
        if isinstance(value, (list, tuple)):
            return [self.normalize(item, field) for item in value]
        if isinstance(value, str) and field is not None:
            name = field.lower()
            if name in self.url_fields:
                return canonical_host(value)
            if name in self.text_fields:
                return value.strip().lower()
        return value

    def digest(self, value: Any) -> str:
        """Hash the normalized form of a value."""
        payload = json.dumps(
            self.normalize(value),
            sort_keys=True,
            default=str,
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]

    def build(self, step_type: str, resolved_input: Any) -> CacheKey:
        """Build the cache key for a step type and its resolved input."""
        return CacheKey(
            step_type=step_type,
            input_hash=self.digest(resolved_input),
            prefix=self.prefix,
        )
