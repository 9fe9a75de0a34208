"""
Batch and record state machines (``expense_export.domain.workflow``).

Responsibility
--------------
The legal lifecycle of a batch and of an export record, expressed as data
(``Guard`` / ``Transition`` / ``Workflow`` value objects) and evaluated by
one function, ``resolve_transition``.  Services never compare statuses by
hand; they ask for the next status and get either a target state or an
``InvalidStateError`` subclass.

Architecture position
---------------------
**Domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* A ``(state, action)`` pair with no matching transition is illegal.
* Where several transitions share ``(state, action)``, exactly one guard
  holds for any context; the first match wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from export_kernel.exceptions import (
    InvalidBatchTransitionError,
    InvalidRecordTransitionError,
)
from expense_export.domain.types import BatchStatus, RecordStatus


@dataclass(frozen=True)
class Guard:
    """A named condition that must hold before a transition fires.

    Descriptive only; ``GUARD_PREDICATES`` maps the name to its check.
    """

    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition.

    ``terminal_states`` have no outgoing transitions.
    """

    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"{self.name}: initial state {self.initial_state!r} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"{self.name}: transition {t.action} {t.from_state}->{t.to_state} "
                    "references an unknown state"
                )

    def actions_from(self, state: str) -> tuple[str, ...]:
        return tuple(dict.fromkeys(t.action for t in self.transitions if t.from_state == state))


@dataclass(frozen=True)
class TransitionContext:
    """Facts the guards are evaluated against."""

    error_count: int = 0
    open_records: int = 0


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

NO_VALIDATION_ERRORS = Guard(
    name="no_validation_errors",
    description="Validation found no errors",
)

HAS_VALIDATION_ERRORS = Guard(
    name="has_validation_errors",
    description="Validation found at least one error",
)

NO_OPEN_RECORDS = Guard(
    name="no_open_records",
    description="No record remains exported or failed",
)

HAS_OPEN_RECORDS = Guard(
    name="has_open_records",
    description="Some record is still exported or failed",
)

GUARD_PREDICATES: dict[str, Callable[[TransitionContext], bool]] = {
    NO_VALIDATION_ERRORS.name: lambda ctx: ctx.error_count == 0,
    HAS_VALIDATION_ERRORS.name: lambda ctx: ctx.error_count > 0,
    NO_OPEN_RECORDS.name: lambda ctx: ctx.open_records == 0,
    HAS_OPEN_RECORDS.name: lambda ctx: ctx.open_records > 0,
}


# -----------------------------------------------------------------------------
# Batch lifecycle
# -----------------------------------------------------------------------------

# Not a stored status: the row is physically removed
DELETED = "deleted"

_DRAFT = BatchStatus.DRAFT.value
_VALIDATED = BatchStatus.VALIDATED.value
_EXPORTED = BatchStatus.EXPORTED.value
_RE_EXPORTED = BatchStatus.RE_EXPORTED.value
_CLOSED = BatchStatus.CLOSED.value

BATCH_WORKFLOW = Workflow(
    name="expense_export_batch",
    description="Expense export batch lifecycle",
    initial_state=_DRAFT,
    states=(_DRAFT, _VALIDATED, _EXPORTED, _RE_EXPORTED, _CLOSED, DELETED),
    transitions=(
        Transition(_DRAFT, _DRAFT, action="pull_records"),
        *(
            t
            for state in (_DRAFT, _VALIDATED)
            for t in (
                Transition(state, _VALIDATED, action="validate", guard=NO_VALIDATION_ERRORS),
                Transition(state, _DRAFT, action="validate", guard=HAS_VALIDATION_ERRORS),
                Transition(state, state, action="defer_records"),
            )
        ),
        Transition(_VALIDATED, _EXPORTED, action="export"),
        *(
            t
            for state in (_EXPORTED, _RE_EXPORTED)
            for t in (
                Transition(state, _RE_EXPORTED, action="re_export"),
                Transition(state, _CLOSED, action="mark_posted", guard=NO_OPEN_RECORDS),
                Transition(state, state, action="mark_posted", guard=HAS_OPEN_RECORDS),
                Transition(state, state, action="mark_failed"),
            )
        ),
        Transition(_DRAFT, DELETED, action="delete"),
    ),
    terminal_states=(_CLOSED, DELETED),
)

# Message for a refused action, where one reads better than the generic text
BATCH_REFUSAL_REASONS: dict[str, str] = {
    "export": "Batch must be validated before export",
    "delete": "Only draft batches can be deleted",
}


# -----------------------------------------------------------------------------
# Record lifecycle
# -----------------------------------------------------------------------------

_PENDING = RecordStatus.PENDING.value
_INCLUDED = RecordStatus.INCLUDED.value
_REC_EXPORTED = RecordStatus.EXPORTED.value
_POSTED = RecordStatus.POSTED.value
_FAILED = RecordStatus.FAILED.value
_DEFERRED = RecordStatus.DEFERRED.value

RECORD_WORKFLOW = Workflow(
    name="expense_export_record",
    description="Export record lifecycle",
    initial_state=_PENDING,
    states=(_PENDING, _INCLUDED, _REC_EXPORTED, _POSTED, _FAILED, _DEFERRED),
    transitions=(
        Transition(_PENDING, _INCLUDED, action="validate", guard=NO_VALIDATION_ERRORS),
        Transition(_PENDING, _PENDING, action="validate", guard=HAS_VALIDATION_ERRORS),
        Transition(_INCLUDED, _INCLUDED, action="validate", guard=NO_VALIDATION_ERRORS),
        Transition(_INCLUDED, _PENDING, action="validate", guard=HAS_VALIDATION_ERRORS),
        Transition(_PENDING, _DEFERRED, action="defer"),
        Transition(_INCLUDED, _DEFERRED, action="defer"),
        Transition(_INCLUDED, _REC_EXPORTED, action="export"),
        Transition(_REC_EXPORTED, _REC_EXPORTED, action="re_export"),
        Transition(_FAILED, _REC_EXPORTED, action="re_export"),
        Transition(_REC_EXPORTED, _POSTED, action="post"),
        Transition(_REC_EXPORTED, _FAILED, action="fail"),
    ),
    terminal_states=(_POSTED, _DEFERRED),
)


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------


def resolve_transition(
    workflow: Workflow,
    current: str,
    action: str,
    context: TransitionContext | None = None,
) -> Transition | None:
    """First transition for ``(current, action)`` whose guard holds, else None."""
    ctx = context or TransitionContext()
    for transition in workflow.transitions:
        if transition.from_state != current or transition.action != action:
            continue
        if transition.guard is None or GUARD_PREDICATES[transition.guard.name](ctx):
            return transition
    return None


def next_batch_status(
    batch_id: object,
    current: BatchStatus | str,
    action: str,
    context: TransitionContext | None = None,
) -> str:
    """
    Target status for a batch action.

    Returns a ``BatchStatus`` value, or ``DELETED`` for ``delete``.

    Raises:
        InvalidBatchTransitionError: no legal transition applies.
    """
    state = BatchStatus(current).value
    transition = resolve_transition(BATCH_WORKFLOW, state, action, context)
    if transition is None:
        raise InvalidBatchTransitionError(
            str(batch_id), state, action, reason=BATCH_REFUSAL_REASONS.get(action)
        )
    return transition.to_state


def next_record_status(
    record_id: object,
    current: RecordStatus | str,
    action: str,
    context: TransitionContext | None = None,
) -> RecordStatus:
    """
    Target status for a record action.

    Raises:
        InvalidRecordTransitionError: no legal transition applies.
    """
    state = RecordStatus(current).value
    transition = resolve_transition(RECORD_WORKFLOW, state, action, context)
    if transition is None:
        raise InvalidRecordTransitionError(str(record_id), state, action)
    return RecordStatus(transition.to_state)
