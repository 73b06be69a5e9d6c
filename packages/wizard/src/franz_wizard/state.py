"""Per-document run state of every stage.

``StageStateStore`` owns the ``stage_id -> StageState`` mapping for one
wizard instance. Every update goes through ``update`` so that status
transitions are validated and the dependency flags (``deps_are_met``,
``should_auto_run``, ``is_stale``) are recomputed for the whole workflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

from franz_common.exceptions import NotFoundError, ValidationError
from franz_common.transitions import TransitionValidator

from .dependencies import evaluate_dependencies
from .workflow import Workflow

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


STAGE_STATUS = TransitionValidator(
    "stage_status",
    {
        "idle": {"running", "completed", "skipped"},
        "running": {"completed", "error", "idle"},
        "completed": {"idle", "running"},
        "error": {"running", "idle"},
        "skipped": {"idle"},
    },
    allow_self=True,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class StageState:
    """Runtime record of one stage in one document.

    Attributes:
        stage_id: Stage this record belongs to
        status: Current status
        user_input: Last input given to the stage (text, form values, ...)
        output: Stage output, set when completed
        error: Error message when status is ``error``
        completed_at: When the output was produced (aware UTC)
        grounding_info: Search metadata from a grounded call
        usage: Token usage of the producing call
        is_stale: Output predates the output of something it depends on
        stale_dismissed: User chose to keep the stale output
        deps_are_met: Every dependency is completed
        should_auto_run: Resolver decided the stage should run by itself
        is_editing_output: User is editing the output by hand
        export_job_id: Job currently tracked for an export stage
        generation_progress: ``{"message": ..., "percent": ...}`` while running
    """

    stage_id: str
    status: StageStatus = StageStatus.IDLE
    user_input: Any = None
    output: Any = None
    error: str | None = None
    completed_at: datetime | None = None
    grounding_info: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None
    is_stale: bool = False
    stale_dismissed: bool = False
    deps_are_met: bool = False
    should_auto_run: bool = False
    is_editing_output: bool = False
    export_job_id: str | None = None
    generation_progress: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.status = StageStatus(self.status)
        self.completed_at = parse_timestamp(self.completed_at)

    @property
    def is_done(self) -> bool:
        """Completed or skipped."""
        return self.status in (StageStatus.COMPLETED, StageStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, StageStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StageState:
        """Build from a dict with snake_case or camelCase keys."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            head, *rest = f.name.split("_")
            camel = head + "".join(part.capitalize() for part in rest)
            if f.name in data:
                values[f.name] = data[f.name]
            elif camel in data:
                values[f.name] = data[camel]
        if "stage_id" not in values:
            raise ValidationError("Stage state is missing stage_id", context={"data": dict(data)})
        return cls(**values)


def initialize_stage_states(workflow: Workflow) -> dict[str, StageState]:
    """Fresh idle state for every stage of ``workflow``."""
    return {
        stage.id: StageState(stage_id=stage.id, deps_are_met=not stage.dependencies)
        for stage in workflow.stages
    }


def validate_stage_state(state: StageState) -> StageState:
    """Repair inconsistent persisted state.

    A completed state without output or completion time goes back to idle,
    and a stage that is not completed cannot be stale. Returns ``state``
    itself when it is already consistent.
    """
    changes: dict[str, Any] = {}
    if state.status is StageStatus.COMPLETED and (state.output is None or state.completed_at is None):
        logger.warning(
            "Stage %s is marked completed without output; resetting to idle", state.stage_id
        )
        changes.update(status=StageStatus.IDLE, completed_at=None)
    status = changes.get("status", state.status)
    if status is not StageStatus.COMPLETED and state.is_stale:
        changes.update(is_stale=False, stale_dismissed=False)
    return replace(state, **changes) if changes else state


@dataclass
class StateReconciliation:
    """What ``reconcile_with_workflow`` changed."""

    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.added)


def reconcile_with_workflow(
    workflow: Workflow,
    loaded: Mapping[str, StageState],
) -> tuple[dict[str, StageState], StateReconciliation]:
    """Align persisted states with the stages the workflow defines now."""
    report = StateReconciliation()
    states: dict[str, StageState] = {}
    for stage_id, state in loaded.items():
        if workflow.has_stage(stage_id):
            states[stage_id] = state
        else:
            report.removed.append(stage_id)
    for stage in workflow.stages:
        if stage.id not in states:
            states[stage.id] = StageState(stage_id=stage.id, deps_are_met=not stage.dependencies)
            report.added.append(stage.id)

    if report.changed:
        logger.warning(
            "Stage states for workflow %s did not match: removed %s, added %s",
            workflow.id, report.removed, report.added,
        )
    # Keep workflow order
    return {stage_id: states[stage_id] for stage_id in workflow.stage_ids}, report


def reset_stuck_export_stages(
    states: Mapping[str, StageState],
    workflow: Workflow,
    keep: Callable[[StageState], bool] | None = None,
) -> dict[str, StageState]:
    """Return export stages left ``running`` to idle.

    A running export stage found in persisted state has lost the process that
    was driving it. ``keep`` is asked about each one and may spare stages
    whose job is still alive.
    """
    result = dict(states)
    for stage in workflow.stages:
        state = result.get(stage.id)
        if not stage.is_export or state is None or state.status is not StageStatus.RUNNING:
            continue
        if keep is not None and keep(state):
            logger.debug("Export stage %s still has a live job %s", stage.id, state.export_job_id)
            continue
        logger.warning("Resetting stuck export stage %s to idle", stage.id)
        result[stage.id] = replace(
            state,
            status=StageStatus.IDLE,
            generation_progress=None,
            export_job_id=None,
        )
    return result


StateListener = Callable[["StageStateStore", "list[str]"], None]

_STATE_FIELDS = frozenset(f.name for f in fields(StageState)) - {"stage_id"}


class StageStateStore:
    """Mutable stage states for one wizard instance.

    Args:
        workflow: Workflow the states belong to
        states: Initial states; fresh idle states when omitted
    """

    def __init__(self, workflow: Workflow, states: Mapping[str, StageState] | None = None):
        self._workflow = workflow
        initial = dict(states) if states is not None else initialize_stage_states(workflow)
        self._states = evaluate_dependencies(workflow.stages, initial)
        self._listeners: list[StateListener] = []

    @property
    def workflow(self) -> Workflow:
        return self._workflow

    def get(self, stage_id: str) -> StageState:
        try:
            return self._states[stage_id]
        except KeyError:
            raise NotFoundError(
                f"No state for stage '{stage_id}'",
                context={"stage_id": stage_id, "workflow_id": self._workflow.id},
            ) from None

    def snapshot(self) -> dict[str, StageState]:
        """Shallow copy of the current mapping."""
        return dict(self._states)

    def __iter__(self) -> Iterator[StageState]:
        return iter(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._states

    def add_listener(self, listener: StateListener) -> None:
        """Call ``listener(store, changed_ids)`` after every effective change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def update(self, stage_id: str, **changes: Any) -> StageState:
        """Apply ``changes`` to one stage and re-resolve dependencies.

        Raises:
            NotFoundError: Unknown stage
            ValidationError: Unknown state field
            InvalidTransitionError: Status change not allowed
        """
        current = self.get(stage_id)
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown stage state fields: {sorted(unknown)}",
                context={"stage_id": stage_id, "fields": sorted(unknown)},
            )
        if "status" in changes:
            target = StageStatus(changes["status"])
            STAGE_STATUS.validate(current.status.value, target.value)
            changes["status"] = target

        states = dict(self._states)
        states[stage_id] = replace(current, **changes)
        self._commit(states)
        return self._states[stage_id]

    def replace_all(self, states: Mapping[str, StageState]) -> None:
        """Swap in a whole mapping (e.g. after loading) without transition checks."""
        self._commit(dict(states))

    def _commit(self, states: dict[str, StageState]) -> None:
        evaluated = evaluate_dependencies(self._workflow.stages, states)
        changed = [
            stage_id for stage_id, state in evaluated.items()
            if self._states.get(stage_id) != state
        ]
        self._states = evaluated
        if not changed:
            return
        logger.debug("Stage states changed: %s", changed)
        for listener in list(self._listeners):
            listener(self, changed)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {stage_id: state.to_dict() for stage_id, state in self._states.items()}
