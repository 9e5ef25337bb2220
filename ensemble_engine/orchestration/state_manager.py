"""Scoped shared-state management for a single ensemble run."""
from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional

from ..errors import StateAccessViolation
from ..models.definition import EnsembleDefinition
from ..models.execution import AccessOperation, AccessRecord

logger = logging.getLogger(__name__)


class StateView(Mapping):
    """Read-only view of state restricted to a step's ``use`` keys.

    The view holds a snapshot taken when it was created. Every successful
    read is reported to the owning StateManager's access log and returns a
    copy, so a step cannot mutate shared state through the view.
    """

    def __init__(
        self,
        step_id: str,
        permitted: FrozenSet[str],
        values: Dict[str, Any],
        recorder: Callable[[str, str, AccessOperation], None],
    ):
        self.step_id = step_id
        self.permitted = permitted
        self._values = values
        self._recorder = recorder

    def __getitem__(self, key: str) -> Any:
        if key not in self.permitted:
            raise StateAccessViolation(key, self.step_id, "read")
        if key not in self._values:
            raise KeyError(key)
        self._recorder(self.step_id, key, AccessOperation.READ)
        return copy.deepcopy(self._values[key])

    def __contains__(self, key: object) -> bool:
        return key in self.permitted and key in self._values

    def __iter__(self) -> Iterator[str]:
        return (key for key in self._values if key in self.permitted)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self) -> str:
        return f"StateView(step={self.step_id!r}, keys={sorted(self.permitted)!r})"


class StateManager:
    """Owns the mutable execution state of one run.

    Grants each step a read view limited to its ``use`` keys and a write
    capability limited to its ``set`` keys. Every read and write is appended
    to an access log; the log is exposed for auditing and never consulted
    for control decisions.
    """

    def __init__(
        self,
        schema: Optional[Dict[str, str]] = None,
        initial: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize state from a schema and initial values.

        Args:
            schema: Declared state keys mapped to type names
            initial: Initial values (keys missing here start as None)
            clock: Timestamp source for access records
        """
        self._schema = dict(schema or {})
        initial = initial or {}
        self._state: Dict[str, Any] = {
            key: copy.deepcopy(initial.get(key)) for key in self._schema
        }
        self._log: List[AccessRecord] = []
        self._clock = clock
        self._lock = Lock()

    @classmethod
    def from_definition(cls, definition: EnsembleDefinition) -> "StateManager":
        """Create a fresh state manager for one run of a definition."""
        return cls(schema=definition.state_schema, initial=definition.initial)

    @property
    def keys(self) -> List[str]:
        return list(self._schema)

    def read_view(self, step_id: str, use: Iterable[str]) -> StateView:
        """Return a snapshot view restricted to the step's ``use`` keys.

        Args:
            step_id: Step identity used in access records
            use: Keys the step may read

        Returns:
            StateView over a copy of the permitted keys
        """
        permitted = frozenset(use)
        with self._lock:
            values = {
                key: copy.deepcopy(value)
                for key, value in self._state.items()
                if key in permitted
            }
        return StateView(step_id, permitted, values, self._record)

    def apply_write(self, step_id: str, set_keys: Iterable[str], updates: Mapping) -> None:
        """Apply updates restricted to the step's ``set`` keys.

        The write is atomic: if any key is outside the permitted set (or the
        schema), nothing is applied.

        Args:
            step_id: Step identity used in access records
            set_keys: Keys the step may write
            updates: Key/value pairs to write

        Raises:
            StateAccessViolation: For the first key the step may not write
            Exception: Whatever copy.deepcopy raises for a value that cannot be
                copied; nothing is applied in that case either
        """
        permitted = frozenset(set_keys)
        for key in updates:
            if key not in permitted or key not in self._schema:
                logger.warning(f"Rejected state write from step '{step_id}' on key '{key}'")
                raise StateAccessViolation(key, step_id, "write")

        if not updates:
            return

        # Copy before taking the lock; a failed copy applies nothing
        copied = {key: copy.deepcopy(value) for key, value in updates.items()}
        with self._lock:
            for key, value in copied.items():
                self._state[key] = value
                self._append(step_id, key, AccessOperation.WRITE)
        logger.debug(f"Step '{step_id}' wrote state keys: {', '.join(updates)}")

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep copy of the full state."""
        with self._lock:
            return copy.deepcopy(self._state)

    @property
    def access_log(self) -> List[AccessRecord]:
        """Ordered copy of all recorded reads and writes."""
        with self._lock:
            return list(self._log)

    def access_report(self) -> Dict[str, Any]:
        """Summarize access patterns per step and list keys nobody touched.

        Returns:
            Dictionary with ``access_patterns`` (step -> records) and ``unused_keys``
        """
        patterns: Dict[str, List[AccessRecord]] = {}
        touched = set()
        for record in self.access_log:
            patterns.setdefault(record.step, []).append(record)
            touched.add(record.key)
        return {
            "access_patterns": patterns,
            "unused_keys": [key for key in self._schema if key not in touched],
        }

    def _record(self, step_id: str, key: str, operation: AccessOperation) -> None:
        with self._lock:
            self._append(step_id, key, operation)

    def _append(self, step_id: str, key: str, operation: AccessOperation) -> None:
        self._log.append(
            AccessRecord(step=step_id, key=key, operation=operation, timestamp=self._clock())
        )
