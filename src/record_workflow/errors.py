"""Workflow engine error types.

Structural errors (unknown transition, wrong source state) are independent of
business guards; `ConditionsNotMet` is the recoverable guard failure a caller
may retry once the record changes.
"""

from __future__ import annotations

from collections.abc import Sequence


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class DefinitionValidationError(WorkflowError, ValueError):
    """Raised when a workflow definition payload is rejected.

    Carries every violation found, not just the first one.
    """

    def __init__(self, slug: str, violations: Sequence[str]):
        self.slug = slug
        self.violations = list(violations)
        super().__init__(
            f"Invalid workflow definition '{slug}': " + "; ".join(self.violations)
        )


class DefinitionNotFound(WorkflowError, LookupError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"No active workflow definition: '{slug}'")


class NoWorkflowInstance(WorkflowError, LookupError):
    """Raised when a record is transitioned before its workflow was initialized."""

    def __init__(self, record_type: str, record_id: str, slug: str | None = None):
        self.record_type = record_type
        self.record_id = record_id
        self.slug = slug
        workflow_info = f" for workflow '{slug}'" if slug else ""
        super().__init__(f"Record {record_type}:{record_id} has no workflow instance{workflow_info}")


class UnknownTransition(WorkflowError, LookupError):
    def __init__(self, slug: str, transition_id: str):
        self.slug = slug
        self.transition_id = transition_id
        super().__init__(f"Unknown transition '{transition_id}' in workflow '{slug}'")


class InvalidTransitionState(WorkflowError):
    """Raised when the current state is not a source state of the transition."""

    def __init__(self, transition_id: str, current_state: str, allowed: Sequence[str]):
        self.transition_id = transition_id
        self.current_state = current_state
        self.allowed = list(allowed)
        super().__init__(
            f"Cannot execute '{transition_id}' from state '{current_state}'. "
            f"Allowed source states: {self.allowed}"
        )


class ConditionsNotMet(WorkflowError):
    """Raised when one or more transition guards evaluate to false."""

    def __init__(self, transition_id: str, failed_conditions: Sequence[str]):
        self.transition_id = transition_id
        self.failed_conditions = list(failed_conditions)
        super().__init__(
            f"Transition conditions not met for '{transition_id}': "
            + ", ".join(self.failed_conditions)
        )


class ActionFailed(WorkflowError):
    """Raised when a transition action fails; the original error is chained as __cause__."""

    def __init__(self, action: str, phase: str, reason: str):
        self.action = action
        self.phase = phase
        self.reason = reason
        super().__init__(f"Workflow {phase}-action '{action}' failed: {reason}")


class ConcurrentTransitionError(WorkflowError):
    """Raised when the instance changed between read and state write."""

    def __init__(self, instance_id: int, expected_version: int):
        self.instance_id = instance_id
        self.expected_version = expected_version
        super().__init__(
            f"Workflow instance {instance_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
