"""
State machine value types.

A workflow is exactly one flat state machine: named states, each in one
coarse category, and named directed transitions between state names.
Everything here is pure; services build a ``StateMachine`` from stored
rows once per logical operation and query it in memory.

Usage:
    from trackflow.core.state_machine import StateMachine, State, Transition

    sm = StateMachine(
        states=(State("OPEN", StateCategory.IN_PROCESS), State("CLOSED", StateCategory.DONE)),
        transitions=(Transition("done", "OPEN", "CLOSED"),),
    )
    sm.available_transitions("OPEN", "")   # every move out of OPEN
"""

from dataclasses import dataclass, field
from enum import Enum

from trackflow.core.exceptions import (
    StateExistedError,
    TransitionExistedError,
    UnknownStateError,
)


class StateCategory(str, Enum):
    """Coarse bucket of a state; drives process-time bookkeeping and archival."""

    BACKLOG = "backlog"
    IN_PROCESS = "in_process"
    DONE = "done"
    REJECTED = "rejected"


# Categories a work item may be archived from.
TERMINAL_CATEGORIES = frozenset({StateCategory.DONE, StateCategory.REJECTED})


@dataclass(frozen=True)
class State:
    name: str
    category: StateCategory
    order: int = 0

    def to_dict(self) -> dict:
        return {"name": self.name, "category": StateCategory(self.category).value, "order": self.order}


@dataclass(frozen=True)
class Transition:
    name: str
    from_state: str
    to_state: str

    def to_dict(self) -> dict:
        return {"name": self.name, "from": self.from_state, "to": self.to_state}


@dataclass(frozen=True)
class StateMachine:
    """Immutable definition of states and transitions plus lookup helpers."""

    states: tuple[State, ...] = field(default_factory=tuple)
    transitions: tuple[Transition, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # accept lists from callers, keep tuples internally
        object.__setattr__(self, "states", tuple(self.states))
        object.__setattr__(self, "transitions", tuple(self.transitions))

    def find_state(self, name: str) -> State | None:
        for state in self.states:
            if state.name == name:
                return state
        return None

    def available_transitions(self, from_state: str = "", to_state: str = "") -> list[Transition]:
        """Transitions matching ``from_state``/``to_state``; an empty name matches any state."""
        return [
            t for t in self.transitions
            if (not from_state or t.from_state == from_state)
            and (not to_state or t.to_state == to_state)
        ]

    def validate(self) -> None:
        """Check that state names are unique and every edge joins known states.

        Raises:
            StateExistedError: a state name appears twice.
            UnknownStateError: a transition endpoint is not a state.
            TransitionExistedError: two transitions share the same from/to pair.
        """
        seen: set[str] = set()
        for state in self.states:
            if state.name in seen:
                raise StateExistedError(state.name)
            seen.add(state.name)
        edges: set[tuple[str, str]] = set()
        for t in self.transitions:
            for endpoint in (t.from_state, t.to_state):
                if endpoint not in seen:
                    raise UnknownStateError(endpoint)
            if (t.from_state, t.to_state) in edges:
                raise TransitionExistedError(t.from_state, t.to_state)
            edges.add((t.from_state, t.to_state))

    def to_dict(self) -> dict:
        return {
            "states": [s.to_dict() for s in self.states],
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateMachine":
        states = [
            State(s["name"], StateCategory(s["category"]), s.get("order", 0))
            for s in data.get("states", [])
        ]
        transitions = [
            Transition(t.get("name", ""), t["from"], t["to"])
            for t in data.get("transitions", [])
        ]
        return cls(states=states, transitions=transitions)


# Built-in template offered to new projects:
#          PENDING      DOING        DONE
# PENDING  -            begin        close
# DOING    cancel       -            finish
# DONE     reopen       X            -
GENERIC_STATE_MACHINE = StateMachine(
    states=(
        State("PENDING", StateCategory.BACKLOG, 1),
        State("DOING", StateCategory.IN_PROCESS, 2),
        State("DONE", StateCategory.DONE, 3),
    ),
    transitions=(
        Transition("begin", "PENDING", "DOING"),
        Transition("close", "PENDING", "DONE"),
        Transition("cancel", "DOING", "PENDING"),
        Transition("finish", "DOING", "DONE"),
        Transition("reopen", "DONE", "PENDING"),
    ),
)
