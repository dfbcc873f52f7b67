"""
Transition tables for agreements, eviction logs and breach logs.

Every status change goes through ``transition``; a pair missing from the
table is an illegal move and raises ForbiddenError.
"""
import enum
from typing import Dict, Tuple

from lease.database.models import AgreementStatus, EvictionStatus, BreachStatus
from lease.errors import ForbiddenError


class AgreementEvent(str, enum.Enum):
    MARK_READY = "mark_ready"
    REQUEST_PAYMENT = "request_payment"
    ATTACH_TENANT = "attach_tenant"
    ACCEPT = "accept"
    ACTIVATE = "activate"
    RECORD_PAYMENT = "record_payment"
    REQUEST_TERMINATION = "request_termination"
    TERMINATE = "terminate"
    COMPLETE = "complete"
    CANCEL = "cancel"


class EvictionEvent(str, enum.Enum):
    CANCEL = "cancel"
    FINALIZE = "finalize"
    RESOLVE = "resolve"


class BreachEvent(str, enum.Enum):
    REVIEW_PENDING_REMEDY = "review_pending_remedy"
    REVIEW_RESOLVED = "review_resolved"
    REVIEW_EVICTION_RECOMMENDED = "review_eviction_recommended"
    RESOLVE = "resolve"
    CANCEL = "cancel"
    CONFIRM = "confirm"


_A = AgreementStatus
_E = EvictionStatus
_B = BreachStatus

AGREEMENT_TRANSITIONS: Dict[Tuple[str, str], str] = {
    (_A.draft.value, AgreementEvent.MARK_READY.value): _A.ready.value,
    (_A.ready.value, AgreementEvent.REQUEST_PAYMENT.value): _A.pending_payment.value,
    (_A.draft.value, AgreementEvent.ATTACH_TENANT.value): _A.draft.value,
    (_A.ready.value, AgreementEvent.ATTACH_TENANT.value): _A.ready.value,
    (_A.pending_payment.value, AgreementEvent.ACCEPT.value): _A.pending_payment.value,
    (_A.pending_payment.value, AgreementEvent.ACTIVATE.value): _A.active.value,
    (_A.active.value, AgreementEvent.RECORD_PAYMENT.value): _A.active.value,
    (_A.active.value, AgreementEvent.REQUEST_TERMINATION.value): _A.active.value,
    (_A.active.value, AgreementEvent.TERMINATE.value): _A.terminated.value,
    (_A.active.value, AgreementEvent.COMPLETE.value): _A.completed.value,
    (_A.draft.value, AgreementEvent.CANCEL.value): _A.cancelled.value,
    (_A.ready.value, AgreementEvent.CANCEL.value): _A.cancelled.value,
    (_A.pending_payment.value, AgreementEvent.CANCEL.value): _A.cancelled.value,
}

EVICTION_TRANSITIONS: Dict[Tuple[str, str], str] = {
    (_E.warning.value, EvictionEvent.CANCEL.value): _E.cancelled.value,
    (_E.warning.value, EvictionEvent.FINALIZE.value): _E.evicted.value,
    (_E.warning.value, EvictionEvent.RESOLVE.value): _E.resolved.value,
}

BREACH_TRANSITIONS: Dict[Tuple[str, str], str] = {}
for _open in (_B.warning.value, _B.pending_remedy.value):
    BREACH_TRANSITIONS[(_open, BreachEvent.REVIEW_PENDING_REMEDY.value)] = _B.pending_remedy.value
    BREACH_TRANSITIONS[(_open, BreachEvent.REVIEW_RESOLVED.value)] = _B.resolved.value
    BREACH_TRANSITIONS[(_open, BreachEvent.REVIEW_EVICTION_RECOMMENDED.value)] = _B.eviction_recommended.value
for _open in (_B.warning.value, _B.pending_remedy.value, _B.eviction_recommended.value):
    BREACH_TRANSITIONS[(_open, BreachEvent.RESOLVE.value)] = _B.resolved.value
    BREACH_TRANSITIONS[(_open, BreachEvent.CANCEL.value)] = _B.cancelled.value
BREACH_TRANSITIONS[(_B.eviction_recommended.value, BreachEvent.CONFIRM.value)] = _B.evicted.value

BREACH_REVIEW_EVENTS = {
    _B.pending_remedy.value: BreachEvent.REVIEW_PENDING_REMEDY,
    _B.resolved.value: BreachEvent.REVIEW_RESOLVED,
    _B.eviction_recommended.value: BreachEvent.REVIEW_EVICTION_RECOMMENDED,
}


def _lookup(table, entity: str, current, event) -> str:
    current_value = getattr(current, "value", current)
    event_value = getattr(event, "value", event)
    new_status = table.get((current_value, event_value))
    if new_status is None:
        raise ForbiddenError(
            f"{entity} in status '{current_value}' cannot handle '{event_value}'",
            {"field": "status", "status": current_value, "event": event_value}
        )
    return new_status


def agreement_transition(current, event) -> str:
    return _lookup(AGREEMENT_TRANSITIONS, "Agreement", current, event)


def eviction_transition(current, event) -> str:
    return _lookup(EVICTION_TRANSITIONS, "Eviction", current, event)


def breach_transition(current, event) -> str:
    return _lookup(BREACH_TRANSITIONS, "Breach case", current, event)
