"""
Ensemble definition models.

These pydantic models describe the declarative source of an ensemble:
its name, the shared-state schema with initial values, the ordered flow
of steps and the optional output mapping. Structural validation (types,
required fields, unknown keys, member tag syntax) happens here; cross-field
invariants are enforced by the DefinitionLoader.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# name or name@version
MEMBER_TAG_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.\-]*(?:@[A-Za-z0-9_.\-]+)?$")

# Declared state type name -> accepted Python types (None accepts anything)
STATE_TYPES: Dict[str, Optional[Tuple[type, ...]]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
    "any": None,
}


def parse_member_reference(tag: str) -> Tuple[str, Optional[str]]:
    """Split a member tag into (name, version); version is None when absent.

    Raises:
        ValueError: If the tag is malformed
    """
    if not MEMBER_TAG_PATTERN.match(tag):
        raise ValueError(f"malformed member type tag '{tag}'")
    name, _, version = tag.partition("@")
    return name, version or None


def value_matches_type(value: Any, type_name: str) -> bool:
    """Check a value against a declared state type.

    ``None`` is accepted for every type so keys can start unset. Booleans are
    rejected for ``number`` and ``integer`` even though ``bool`` subclasses ``int``.
    """
    if value is None:
        return True
    accepted = STATE_TYPES.get(type_name)
    if accepted is None:
        return True
    if isinstance(value, bool) and bool not in accepted:
        return False
    return isinstance(value, accepted)


class CachePolicy(BaseModel):
    """Per-step result caching policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ttl: float = Field(..., gt=0)
    bypass: bool = False
    tags: List[str] = Field(default_factory=list)


class FlowStep(BaseModel):
    """A single step of an ensemble flow."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    member: str
    config: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None
    use: List[str] = Field(default_factory=list)
    set: List[str] = Field(default_factory=list)
    cache: Optional[CachePolicy] = None
    condition: Optional[Any] = Field(None, alias="if")
    parallel_group: Optional[str] = Field(None, alias="parallelGroup")
    fallback: Any = None

    @field_validator("member")
    @classmethod
    def validate_member_tag(cls, v: str) -> str:
        """Validate member tag syntax (existence is checked by the dispatcher)."""
        if not MEMBER_TAG_PATTERN.match(v):
            raise ValueError(f"malformed member type tag '{v}'")
        return v

    @field_validator("id", "parallel_group")
    @classmethod
    def validate_identifier(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("must not be blank")
        return v

    @property
    def has_fallback(self) -> bool:
        """True when the step explicitly declared a fallback output."""
        return "fallback" in self.model_fields_set

    @property
    def has_condition(self) -> bool:
        return "condition" in self.model_fields_set


class EnsembleDefinition(BaseModel):
    """Validated, immutable ensemble definition."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    state_schema: Dict[str, str] = Field(default_factory=dict, alias="stateSchema")
    initial: Dict[str, Any] = Field(default_factory=dict)
    flow: List[FlowStep] = Field(..., min_length=1)
    output: Any = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("ensemble name is required")
        return v

    @field_validator("state_schema")
    @classmethod
    def validate_state_types(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key, type_name in v.items():
            if type_name not in STATE_TYPES:
                raise ValueError(
                    f"unknown type '{type_name}' for key '{key}' "
                    f"(expected one of {', '.join(sorted(STATE_TYPES))})"
                )
        return v

    @property
    def has_output(self) -> bool:
        return "output" in self.model_fields_set

    @property
    def step_ids(self) -> List[str]:
        """Step identities in flow order.

        An explicit ``id`` wins; otherwise the member tag is used, suffixed with
        ``#<position>`` when the same tag appears more than once without an id.
        """
        counts = Counter(step.member for step in self.flow if step.id is None)
        ids = []
        for position, step in enumerate(self.flow):
            if step.id is not None:
                ids.append(step.id)
            elif counts[step.member] > 1:
                ids.append(f"{step.member}#{position}")
            else:
                ids.append(step.member)
        return ids

    def initial_state(self) -> Dict[str, Any]:
        """Build the starting state: every schema key, initial value or None."""
        return {key: self.initial.get(key) for key in self.state_schema}
