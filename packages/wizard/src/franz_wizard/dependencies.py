"""Dependency resolution over stage states.

``evaluate_dependencies`` is a pure function: it derives ``deps_are_met``,
``should_auto_run``, ``is_stale`` and ``stale_dismissed`` for every stage
from the statuses of the stages it waits on, and returns a new mapping.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Mapping, Sequence

if TYPE_CHECKING:
    from .state import StageState
    from .workflow import Stage

logger = logging.getLogger(__name__)

_COMPLETED = "completed"
_IDLE = "idle"


def _is_completed(state: StageState | None) -> bool:
    return state is not None and state.status == _COMPLETED


def _all_completed(ids: Sequence[str], states: Mapping[str, StageState]) -> bool:
    return all(_is_completed(states.get(stage_id)) for stage_id in ids)


def _is_stale(stage: Stage, state: StageState, states: Mapping[str, StageState]) -> bool:
    if state.status != _COMPLETED or state.output is None or state.completed_at is None:
        return False
    upstream = list(stage.dependencies) + list(stage.autorun_depends_on)
    if stage.auto_run_conditions:
        upstream += stage.auto_run_conditions.requires_all
    for dep_id in dict.fromkeys(upstream):
        dep = states.get(dep_id)
        if not _is_completed(dep):
            continue
        if dep.is_stale:
            return True
        if dep.completed_at is not None and dep.completed_at > state.completed_at:
            return True
    return False


def _evaluate_stage(stage: Stage, state: StageState, states: Mapping[str, StageState]) -> StageState:
    deps_met = _all_completed(stage.dependencies, states)

    conditions_met = True
    conditions = stage.auto_run_conditions
    if conditions:
        if conditions.requires_all:
            conditions_met = _all_completed(conditions.requires_all, states)
        if conditions.requires_any:
            conditions_met = conditions_met and any(
                _is_completed(states.get(stage_id)) for stage_id in conditions.requires_any
            )

    if stage.autorun_depends_on:
        autorun_deps_met = _all_completed(stage.autorun_depends_on, states)
    else:
        autorun_deps_met = deps_met

    should_auto_run = (
        stage.auto_run
        and state.status == _IDLE
        and not state.is_editing_output
        and deps_met
        and autorun_deps_met
        and conditions_met
    )

    is_stale = _is_stale(stage, state, states)
    stale_dismissed = state.stale_dismissed if is_stale else False

    if (
        state.deps_are_met == deps_met
        and state.should_auto_run == should_auto_run
        and state.is_stale == is_stale
        and state.stale_dismissed == stale_dismissed
    ):
        return state
    return replace(
        state,
        deps_are_met=deps_met,
        should_auto_run=should_auto_run,
        is_stale=is_stale,
        stale_dismissed=stale_dismissed,
    )


def evaluate_dependencies(
    stages: Sequence[Stage],
    states: Mapping[str, StageState],
) -> Mapping[str, StageState]:
    """Recompute dependency flags for every stage.

    Staleness propagates down chains of stages, so evaluation repeats until
    nothing changes; each pass can only mark more stages stale.

    Returns:
        ``states`` itself when no flag changed, otherwise a new dict.
    """
    result = dict(states)
    changed = False
    for _ in range(len(stages) + 1):
        pass_changed = False
        for stage in stages:
            state = result.get(stage.id)
            if state is None:
                continue
            evaluated = _evaluate_stage(stage, state, result)
            if evaluated is not state:
                result[stage.id] = evaluated
                pass_changed = True
        if not pass_changed:
            break
        changed = True

    if not changed:
        return states
    logger.debug(
        "Dependency flags updated: %s",
        [stage_id for stage_id in result if result[stage_id] is not states.get(stage_id)],
    )
    return result
