"""Declarative status graphs.

Stage states and export jobs both move between named statuses. A
``TransitionValidator`` knows which moves are legal and rejects the rest;
it never stores a current status itself. Statuses may be given as plain
strings or as ``str``-valued enums.

Example:
    ```python
    from franz_common.transitions import TransitionValidator

    JOB_STATUS = TransitionValidator(
        "job_status",
        {
            "queued":    {"running", "cancelled"},
            "running":   {"completed", "error", "cancelled"},
            "completed": set(),
        },
    )

    JOB_STATUS.validate("queued", "running")  # ok
    JOB_STATUS.validate("completed", "running")  # raises InvalidTransitionError
    ```
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping, Union

from franz_common.exceptions import OperationError

Status = Union[str, Enum]


def _name(status: Status) -> str:
    return status.value if isinstance(status, Enum) else status


class InvalidTransitionError(OperationError):
    """A status change the graph does not allow.

    Attributes:
        entity: Name of the graph (e.g. ``"stage_status"``)
        current_status: Status being left
        target_status: Rejected target
        allowed: Legal targets from ``current_status``; None when the current
            status is not part of the graph at all
    """

    def __init__(
        self,
        entity: str,
        current_status: str,
        target_status: str,
        allowed: set[str] | None = None,
    ) -> None:
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = allowed

        if allowed is None:
            message = f"{entity}: unknown current status '{current_status}'"
        else:
            targets = ", ".join(sorted(allowed)) or "(none, terminal)"
            message = (
                f"{entity}: cannot move from '{current_status}' to '{target_status}'. "
                f"Allowed targets: {targets}"
            )
        super().__init__(
            message,
            context={
                "entity": entity,
                "current_status": current_status,
                "target_status": target_status,
                "allowed": sorted(allowed or ()),
            },
        )


class TransitionValidator:
    """Checks moves against a graph of ``status -> allowed targets``.

    Statuses that only appear as targets are terminal.

    Args:
        name: Used in error messages
        transitions: Outgoing moves for each status
        allow_self: Accept ``validate(x, x)`` for any known status, for
            records rewritten without a status change
    """

    def __init__(
        self,
        name: str,
        transitions: Mapping[Status, Iterable[Status]],
        allow_self: bool = False,
    ) -> None:
        self._name = name
        self._graph: dict[str, frozenset[str]] = {
            _name(source): frozenset(_name(t) for t in targets)
            for source, targets in transitions.items()
        }
        self._allow_self = allow_self
        self._statuses = frozenset(self._graph).union(*self._graph.values())

    @property
    def name(self) -> str:
        return self._name

    @property
    def statuses(self) -> frozenset[str]:
        """Every status in the graph, sources and targets."""
        return self._statuses

    def allowed_targets(self, status: Status) -> frozenset[str]:
        """Legal targets from ``status``; empty for terminal or unknown ones."""
        return self._graph.get(_name(status), frozenset())

    def is_terminal(self, status: Status) -> bool:
        return not self.allowed_targets(status)

    def is_allowed(self, current_status: Status | None, target_status: Status) -> bool:
        """Whether ``validate`` would accept the move."""
        try:
            self.validate(current_status, target_status)
        except InvalidTransitionError:
            return False
        return True

    def validate(self, current_status: Status | None, target_status: Status) -> None:
        """Reject a move the graph does not allow.

        A ``current_status`` of None means the record is new and anything
        goes.

        Raises:
            InvalidTransitionError: If the move is not allowed
        """
        if current_status is None:
            return
        current, target = _name(current_status), _name(target_status)
        if current not in self._statuses:
            raise InvalidTransitionError(self._name, current, target, allowed=None)
        if self._allow_self and current == target:
            return
        allowed = self.allowed_targets(current)
        if target not in allowed:
            raise InvalidTransitionError(self._name, current, target, allowed=set(allowed))

    def __repr__(self) -> str:
        return f"TransitionValidator({self._name!r}, {len(self._statuses)} statuses)"
