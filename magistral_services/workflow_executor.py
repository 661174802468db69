"""
magistral_services.workflow_executor -- Workflow transition execution.

Responsibility:
    Looks up the (current state, action) pair in a declared workflow,
    evaluates the transition's guard and writes one ``workflow_transition``
    log record per attempt, whatever the outcome.  It decides whether a
    transition may fire; writing the new status and its audit entry is the
    caller's job (PrescriptionStateMachine, DispatchService).

Architecture position:
    Services layer.  May import from magistral_kernel (domain, logging,
    exceptions).

Invariants enforced:
    - No transition fires unless the workflow declares it for the current
      state and action.
    - A guarded transition fires only when its evaluator returns True; an
      unknown guard or an evaluator that raises counts as not satisfied.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Mapping

from magistral_kernel.domain.workflow import (
    Guard,
    Transition,
    TransitionResult,
    Workflow,
    resolve_transition,
)
from magistral_kernel.exceptions import GuardFailedError, InvalidTransitionError
from magistral_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.workflow_executor")

OUTCOME_SUCCESS = "success"
OUTCOME_GUARD_FAILED = "guard_failed"
OUTCOME_NO_TRANSITION = "no_transition"

OutcomeSink = Callable[[dict], None]


class _TransitionTrace:
    """Collects the identifying fields of one attempt and emits its record."""

    def __init__(
        self,
        workflow: Workflow,
        entity_type: str,
        entity_id: Any,
        from_state: str,
        action: str,
        actor_id: str | None,
        sink: OutcomeSink | None,
    ):
        self._started = time.monotonic()
        self._sink = sink
        self._fields: dict[str, Any] = {
            "workflow": workflow.name,
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "from_state": from_state,
        }
        if actor_id is not None:
            self._fields["actor_id"] = actor_id

    def emit(self, outcome: str, reason: str, to_state: str | None = None) -> None:
        record = dict(self._fields)
        record["outcome"] = outcome
        record["reason"] = reason
        record["duration_ms"] = round((time.monotonic() - self._started) * 1000, 3)
        if to_state is not None:
            record["to_state"] = to_state
        logger.info("workflow_transition", extra=record)
        if self._sink is not None:
            self._sink({**record, **LogContext.get_all(), "message": "workflow_transition"})


def _lookup(context: Any, key: str, default: Any = None) -> Any:
    if context is None:
        return default
    if isinstance(context, Mapping):
        return context.get(key, default)
    return getattr(context, key, default)


class GuardExecutor:
    """
    Evaluation logic per guard name.

    Workflows only declare guards (name + description); the callables that
    decide them are registered here.
    """

    def __init__(self) -> None:
        self._evaluators: dict[str, Callable[[Any], bool]] = {}

    def register(self, guard_name: str, evaluator: Callable[[Any], bool]) -> None:
        self._evaluators[guard_name] = evaluator

    def is_registered(self, guard_name: str) -> bool:
        return guard_name in self._evaluators

    def evaluate(self, guard: Guard, context: Any = None) -> bool:
        evaluator = self._evaluators.get(guard.name)
        if evaluator is None:
            logger.warning("guard_no_evaluator", extra={"guard_name": guard.name})
            return False
        try:
            return bool(evaluator(context))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "guard_evaluation_error",
                extra={"guard_name": guard.name, "error": str(exc)},
            )
            return False


def default_guard_executor() -> GuardExecutor:
    """GuardExecutor with the evaluators for every guard the bundled workflows declare."""
    executor = GuardExecutor()
    executor.register(
        "external_supply_source",
        lambda ctx: _lookup(ctx, "supply_source") == "external_pharmacy_stock",
    )
    executor.register(
        "document_expired",
        lambda ctx: bool(_lookup(ctx, "document_expired", False)),
    )
    executor.register(
        "attention_cleared",
        lambda ctx: not _lookup(ctx, "attention_flags") or bool(_lookup(ctx, "override_attention", False)),
    )
    executor.register(
        "reception_checklist_complete",
        lambda ctx: not _lookup(ctx, "missing_checks"),
    )
    executor.register(
        "repreparation_allowed",
        lambda ctx: bool(_lookup(ctx, "repreparation_allowed", False)),
    )
    return executor


class WorkflowExecutor:

    def __init__(self, guard_executor: GuardExecutor | None = None) -> None:
        self._guard_executor = guard_executor or default_guard_executor()

    def execute_transition(
        self,
        workflow: Workflow,
        entity_type: str,
        entity_id: Any,
        current_state: str,
        action: str,
        actor_id: str | None = None,
        context: dict[str, Any] | None = None,
        outcome_sink: OutcomeSink | None = None,
    ) -> TransitionResult:
        """Resolve and guard-check one transition; domain outcomes are returned, not raised."""
        trace = _TransitionTrace(
            workflow, entity_type, entity_id, current_state, action, actor_id, outcome_sink,
        )

        resolved = resolve_transition(workflow, current_state, action)
        if not resolved.success:
            trace.emit(OUTCOME_NO_TRANSITION, resolved.reason)
            return resolved

        transition: Transition = resolved.transition
        guard = transition.guard
        if guard is not None and not self._guard_executor.evaluate(guard, context or {}):
            reason = f"Guard not satisfied: {guard.name}"
            trace.emit(OUTCOME_GUARD_FAILED, reason)
            return TransitionResult(
                success=False,
                reason=reason,
                outcome=OUTCOME_GUARD_FAILED,
                transition=transition,
            )

        trace.emit(OUTCOME_SUCCESS, "transition allowed", to_state=transition.to_state)
        return resolved

    def require_transition(
        self,
        workflow: Workflow,
        entity_type: str,
        entity_id: Any,
        current_state: str,
        action: str,
        actor_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Transition:
        """Like execute_transition, but raises InvalidTransitionError / GuardFailedError."""
        result = self.execute_transition(
            workflow=workflow,
            entity_type=entity_type,
            entity_id=entity_id,
            current_state=current_state,
            action=action,
            actor_id=actor_id,
            context=context,
        )
        if result.success:
            return result.transition
        if result.outcome == OUTCOME_GUARD_FAILED:
            raise GuardFailedError(str(entity_id), action, result.transition.guard.name)
        raise InvalidTransitionError(str(entity_id), current_state, action)
