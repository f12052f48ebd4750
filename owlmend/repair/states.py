"""Repair state machine: explicit states, a transition table, and a recorded history."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum

from owlmend.errors import OwlMendError


class RepairState(str, Enum):
    """Lifecycle state of one validate-and-repair call."""

    DETECTING = "detecting"
    PASS = "pass"
    STRATEGIZING = "strategizing"
    DIRECT_SUBSTITUTION = "direct_substitution"
    RETRIEVED_RECIPE = "retrieved_recipe"
    INLINE_MODEL_FIX = "inline_model_fix"
    SANDBOXED_TRANSFORMATION = "sandboxed_transformation"
    RESOLVED = "resolved"
    UNRESOLVABLE = "unresolvable"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {RepairState.PASS, RepairState.RESOLVED, RepairState.UNRESOLVABLE, RepairState.CANCELLED}
)

STRATEGY_STATES = (
    RepairState.DIRECT_SUBSTITUTION,
    RepairState.RETRIEVED_RECIPE,
    RepairState.INLINE_MODEL_FIX,
    RepairState.SANDBOXED_TRANSFORMATION,
)


class InvalidTransitionError(OwlMendError):
    """Raised when a state change is not in the transition table."""

    def __init__(self, current: RepairState, target: RepairState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid repair transition {current.value} -> {target.value}")


def build_transitions(plan: Sequence[RepairState]) -> dict[RepairState, frozenset[RepairState]]:
    """Transition table for a strategy plan.

    Strategies are visited in plan order; each one either resolves the call or
    hands over to the next. The last one hands over to UNRESOLVABLE. Every
    non-terminal state may move to CANCELLED.
    """
    for state in plan:
        if state not in STRATEGY_STATES:
            raise ValueError(f"{state} is not a strategy state")
    if len(set(plan)) != len(plan):
        raise ValueError("strategy plan must not repeat a strategy")

    first = plan[0] if plan else RepairState.UNRESOLVABLE
    table: dict[RepairState, set[RepairState]] = {
        RepairState.DETECTING: {RepairState.PASS, RepairState.STRATEGIZING},
        RepairState.STRATEGIZING: {first},
    }
    for index, state in enumerate(plan):
        following = plan[index + 1] if index + 1 < len(plan) else RepairState.UNRESOLVABLE
        table[state] = {RepairState.RESOLVED, following}
    for state in table:
        table[state].add(RepairState.CANCELLED)
    return {state: frozenset(targets) for state, targets in table.items()}


class RepairStateMachine:
    """Tracks one repair's state and rejects transitions outside the table."""

    def __init__(self, plan: Sequence[RepairState] = STRATEGY_STATES) -> None:
        self.plan = tuple(plan)
        self._transitions = build_transitions(self.plan)
        self.state = RepairState.DETECTING
        self.history: list[RepairState] = [RepairState.DETECTING]

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def can_transition(self, target: RepairState) -> bool:
        return target in self._transitions.get(self.state, frozenset())

    def transition(self, target: RepairState) -> RepairState:
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state, target)
        self.state = target
        self.history.append(target)
        return target

    def cancel(self) -> None:
        if not self.terminal:
            self.transition(RepairState.CANCELLED)

    def history_values(self) -> tuple[str, ...]:
        return tuple(state.value for state in self.history)
