"""Pure domain types: clock, workflow value objects, measures."""

from magistral_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from magistral_kernel.domain.values import Measure, parse_decimal
from magistral_kernel.domain.workflow import (
    Guard,
    Transition,
    TransitionResult,
    Workflow,
    resolve_transition,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "Measure",
    "parse_decimal",
    "Guard",
    "Transition",
    "TransitionResult",
    "Workflow",
    "resolve_transition",
]
