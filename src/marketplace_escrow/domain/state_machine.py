"""State machine guards for bids, escrow holds and disputes.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API, MCP tools or scheduler do, an illegal transition
(e.g., released -> disputed) raises TransitionNotAllowed before any row is
written. Services translate that into the typed domain errors.

A machine is instantiated per entity at the entity's current status and only
validates; persisting the new status is the repository's job.

Escrow hold transitions:
    funded         -> held            (capture_confirmed)
    held           -> disputed        (dispute_filed)
    disputed       -> held            (dispute_withdrawn)
    held           -> released        (payout_confirmed)
    disputed       -> released        (dispute_paid_out)
    disputed       -> refunded        (dispute_refunded)
    held           -> release_failed  (retries_exhausted)
    release_failed -> held            (release_requeued)

Bid transitions:
    pending -> accepted | declined | withdrawn

Work order transitions:
    open -> in_progress -> completed -> closed

Dispute transitions:
    open                               -> under_review   (begin_review)
    mediation, escalated               -> under_review   (begin_review)
    under_review                       -> mediation      (send_to_mediation)
    under_review, mediation            -> escalated      (escalate)
    under_review, mediation, escalated -> resolved       (resolve)
    under_review, mediation, escalated -> closed         (close_case)
    any non-terminal                   -> cancelled      (cancel_case)
"""

from __future__ import annotations

from statemachine import State, StateMachine

from marketplace_escrow.domain.enums import DisputeStatus


class _GuardMachine(StateMachine):
    """Shared construction for machines that start at a persisted status."""

    def __init__(self, current_status: str | None = None) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The persisted status value (e.g., "held").
                           Must match one of the state ids exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status is not None and current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class EscrowStateMachine(_GuardMachine):
    """Guards the escrow hold lifecycle.

    Usage:
        sm = EscrowStateMachine("held")
        sm.dispute_filed()   # transitions to disputed
        sm.status            # "disputed"
    """

    funded = State(initial=True)
    held = State()
    disputed = State()
    released = State(final=True)
    refunded = State(final=True)
    release_failed = State()

    capture_confirmed = funded.to(held)

    dispute_filed = held.to(disputed)
    dispute_withdrawn = disputed.to(held)
    dispute_paid_out = disputed.to(released)
    dispute_refunded = disputed.to(refunded)

    payout_confirmed = held.to(released)
    retries_exhausted = held.to(release_failed)
    release_requeued = release_failed.to(held)


class BidStateMachine(_GuardMachine):
    """Guards the bid lifecycle. Every decision is terminal."""

    pending = State(initial=True)
    accepted = State(final=True)
    declined = State(final=True)
    withdrawn = State(final=True)

    accept = pending.to(accepted)
    decline = pending.to(declined)
    withdraw = pending.to(withdrawn)


class WorkOrderStateMachine(_GuardMachine):
    """Guards the work order lifecycle. Closed orders are immutable."""

    open = State(initial=True)
    in_progress = State()
    completed = State()
    closed = State(final=True)

    start_work = open.to(in_progress)
    complete = in_progress.to(completed)
    close = completed.to(closed)


class DisputeStateMachine(_GuardMachine):
    """Guards the dispute lifecycle.

    under_review may cycle with mediation/escalated any number of times
    before the case reaches resolved, closed or cancelled.
    """

    open = State(initial=True)
    under_review = State()
    mediation = State()
    escalated = State()
    resolved = State(final=True)
    closed = State(final=True)
    cancelled = State(final=True)

    begin_review = open.to(under_review) | mediation.to(under_review) | escalated.to(under_review)
    send_to_mediation = under_review.to(mediation)
    escalate = under_review.to(escalated) | mediation.to(escalated)
    resolve = under_review.to(resolved) | mediation.to(resolved) | escalated.to(resolved)
    close_case = under_review.to(closed) | mediation.to(closed) | escalated.to(closed)
    cancel_case = (
        open.to(cancelled)
        | under_review.to(cancelled)
        | mediation.to(cancelled)
        | escalated.to(cancelled)
    )


# Target status -> event that reaches it. Used by advance(), which is
# addressed by the status the arbiter wants rather than by event name.
DISPUTE_EVENT_FOR_TARGET: dict[str, str] = {
    DisputeStatus.UNDER_REVIEW.value: "begin_review",
    DisputeStatus.MEDIATION.value: "send_to_mediation",
    DisputeStatus.ESCALATED.value: "escalate",
    DisputeStatus.RESOLVED.value: "resolve",
    DisputeStatus.CLOSED.value: "close_case",
    DisputeStatus.CANCELLED.value: "cancel_case",
}


def validate_transition(
    machine_cls: type[_GuardMachine],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Args:
        machine_cls: One of the guard machines in this module.
        current_status: Current persisted status value.
        event_name: The event to fire (e.g., "dispute_filed").

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method) or event_name.startswith("_"):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
