"""
Definition loader and validator.

Turns parsed structured data (or a YAML/JSON file) into an immutable
EnsembleDefinition. Validation is all-or-nothing and happens before any
execution state exists:

1. Structure via the pydantic models (required fields, types, unknown keys,
   member tag syntax, declared state types)
2. Cross-field invariants:
   - ``use``/``set`` lists and ``initial`` keys name declared state keys
   - initial values conform to their declared type
   - ``${state.<key>}`` references in config and guards name declared keys
   - step ids are unique
   - parallel groups are contiguous and their ``set`` lists are disjoint
   - ``${steps.<id>}`` references point at earlier stages
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import ValidationError

from ..errors import SchemaValidationError
from ..models.definition import EnsembleDefinition, parse_member_reference, value_matches_type
from .engine.plan import ExecutionPlan
from .resolver import SCOPE_STATE, find_references

logger = logging.getLogger(__name__)

SOURCE_FIELD = "<source>"

__all__ = ["DefinitionLoader", "dump_definition", "load_definition", "parse_member_reference"]


def _location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or SOURCE_FIELD


class DefinitionLoader:
    """Loads and validates ensemble definitions.

    Example:
        loader = DefinitionLoader()
        definition = loader.load_file("ensembles/enrich.yaml")
        assert loader.dump(definition)["name"] == definition.name
    """

    def load(self, source: Mapping) -> EnsembleDefinition:
        """Validate parsed structured data.

        Args:
            source: Mapping with ``name``, ``flow`` and optional ``stateSchema``,
                ``initial``, ``description``, ``output``

        Returns:
            Immutable EnsembleDefinition

        Raises:
            SchemaValidationError: On the first violation found
        """
        if not isinstance(source, Mapping):
            raise SchemaValidationError(
                SOURCE_FIELD, f"expected a mapping, got {type(source).__name__}"
            )

        try:
            definition = EnsembleDefinition.model_validate(dict(source))
        except ValidationError as e:
            error = e.errors()[0]
            raise SchemaValidationError(_location(error["loc"]), error["msg"]) from e

        self._check_initial(definition)
        self._check_steps(definition)
        ExecutionPlan.compile(definition)

        logger.debug(f"Loaded ensemble '{definition.name}' with {len(definition.flow)} steps")
        return definition

    def load_file(self, path: Union[str, Path]) -> EnsembleDefinition:
        """Read a ``.yaml``/``.yml`` or ``.json`` file and validate it.

        Raises:
            SchemaValidationError: If the file cannot be read or parsed, is
                empty, or fails validation
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SchemaValidationError(SOURCE_FIELD, f"cannot read {path}: {e}") from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text) if text.strip() else None
            else:
                data = yaml.safe_load(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise SchemaValidationError(SOURCE_FIELD, f"cannot parse {path}: {e}") from e

        if data is None:
            raise SchemaValidationError(SOURCE_FIELD, f"{path} is empty")

        logger.info(f"Loading ensemble definition from {path}")
        return self.load(data)

    def dump(self, definition: EnsembleDefinition) -> Dict[str, Any]:
        """Serialize back to the declared field names and the fields that were set."""
        return definition.model_dump(by_alias=True, exclude_unset=True)

    @staticmethod
    def _check_initial(definition: EnsembleDefinition) -> None:
        schema = definition.state_schema
        for key, value in definition.initial.items():
            if key not in schema:
                raise SchemaValidationError(
                    f"initial.{key}", "key is not declared in stateSchema"
                )
            if not value_matches_type(value, schema[key]):
                raise SchemaValidationError(
                    f"initial.{key}",
                    f"expected {schema[key]}, got {type(value).__name__}",
                )

    @staticmethod
    def _check_steps(definition: EnsembleDefinition) -> None:
        schema = definition.state_schema
        seen_ids: Dict[str, int] = {}
        group_writes: Dict[str, Dict[str, int]] = {}

        for index, (step_id, step) in enumerate(zip(definition.step_ids, definition.flow)):
            prefix = f"flow.{index}"

            if step_id in seen_ids:
                raise SchemaValidationError(
                    f"{prefix}.id",
                    f"duplicate step id '{step_id}' (first used by flow.{seen_ids[step_id]})",
                )
            seen_ids[step_id] = index

            for field_name, keys in (("use", step.use), ("set", step.set)):
                for key in keys:
                    if key not in schema:
                        raise SchemaValidationError(
                            f"{prefix}.{field_name}",
                            f"state key '{key}' is not declared in stateSchema",
                        )

            DefinitionLoader._check_state_references(prefix, "config", step.config, schema)
            DefinitionLoader._check_state_references(prefix, "if", step.condition, schema)

            group = step.parallel_group
            if group is not None:
                writers = group_writes.setdefault(group, {})
                for key in step.set:
                    if key in writers:
                        raise SchemaValidationError(
                            f"{prefix}.set",
                            f"key '{key}' is also written by flow.{writers[key]} "
                            f"in parallel group '{group}'",
                        )
                    writers[key] = index

    @staticmethod
    def _check_state_references(prefix: str, field_name: str, tree: Any, schema: Dict[str, str]) -> None:
        for scope, path in find_references(tree):
            if scope != SCOPE_STATE or not path:
                continue
            key = path.split(".", 1)[0]
            if key not in schema:
                raise SchemaValidationError(
                    f"{prefix}.{field_name}",
                    f"reference to undeclared state key '{key}'",
                )


def load_definition(source: Union[Mapping, str, Path]) -> EnsembleDefinition:
    """Load a definition from a mapping or a file path."""
    loader = DefinitionLoader()
    if isinstance(source, Mapping):
        return loader.load(source)
    return loader.load_file(source)


def dump_definition(definition: EnsembleDefinition) -> Dict[str, Any]:
    return DefinitionLoader().dump(definition)
