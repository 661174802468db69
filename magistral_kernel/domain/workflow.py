"""
Canonical workflow types (``magistral_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the fixed state machines of this domain
(prescription lifecycle, dispatch note lifecycle) plus the pure lookup
``resolve_transition(workflow, current_state, action)``.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* At most one transition exists per (from_state, action) pair.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the workflow executor does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``note`` is the human-readable audit note template appended when the
    transition fires.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    note: str = ""


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} "
                f"not in states"
            )
        seen: set[tuple[str, str]] = set()
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: transition {t.action!r} references "
                    f"unknown state ({t.from_state!r} -> {t.to_state!r})"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    f"has outgoing transition {t.action!r}"
                )
            key = (t.from_state, t.action)
            if key in seen:
                raise ValueError(
                    f"Workflow {self.name}: duplicate transition for {key!r}"
                )
            seen.add(key)

    def actions_from(self, state: str) -> tuple[str, ...]:
        """Actions available from ``state`` (before guard evaluation)."""
        return tuple(t.action for t in self.transitions if t.from_state == state)

    def targets_of(self, action: str) -> frozenset[str]:
        return frozenset(t.to_state for t in self.transitions if t.action == action)


@dataclass(frozen=True)
class TransitionResult:
    """Result of resolving or executing a workflow transition.

    ``outcome`` is one of ``success``, ``no_transition``, ``guard_failed``.
    """
    success: bool
    new_state: str | None = None
    reason: str = ""
    outcome: str = "success"
    transition: Transition | None = field(default=None, compare=False)


def resolve_transition(
    workflow: Workflow,
    current_state: str,
    action: str,
) -> TransitionResult:
    """Pure (state, action) -> result lookup; guards are not evaluated."""
    for t in workflow.transitions:
        if t.from_state == current_state and t.action == action:
            return TransitionResult(
                success=True,
                new_state=t.to_state,
                outcome="success",
                transition=t,
            )
    return TransitionResult(
        success=False,
        outcome="no_transition",
        reason=(
            f"No transition from '{current_state}' via action '{action}' "
            f"in workflow '{workflow.name}'"
        ),
    )
