from __future__ import annotations

from enum import Enum
from typing import Mapping


class RegistrationStatus(str, Enum):
    STARTED = "started"
    SUBMITTED = "submitted"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class RegistrationEvent(str, Enum):
    SUBMIT = "submit"
    FINALIZE_PAID = "finalize_paid"      # no-payment mode or central pay
    FINALIZE_UNPAID = "finalize_unpaid"  # self pay, waits for the processor
    WITHDRAW = "withdraw"  # organizer releases a seat nobody has claimed
    EXPIRE_SWEEP = "expire_sweep"


PROVISIONAL_STATUSES: frozenset[RegistrationStatus] = frozenset(
    {RegistrationStatus.STARTED, RegistrationStatus.SUBMITTED, RegistrationStatus.PAYMENT_PENDING}
)

# (from, event) -> to. Anything missing is an illegal transition.
TRANSITIONS: Mapping[tuple[RegistrationStatus, RegistrationEvent], RegistrationStatus] = {
    (RegistrationStatus.STARTED, RegistrationEvent.SUBMIT): RegistrationStatus.SUBMITTED,
    (RegistrationStatus.STARTED, RegistrationEvent.FINALIZE_PAID): RegistrationStatus.CONFIRMED,
    (RegistrationStatus.SUBMITTED, RegistrationEvent.FINALIZE_PAID): RegistrationStatus.CONFIRMED,
    (RegistrationStatus.STARTED, RegistrationEvent.FINALIZE_UNPAID): RegistrationStatus.PAYMENT_PENDING,
    (RegistrationStatus.SUBMITTED, RegistrationEvent.FINALIZE_UNPAID): RegistrationStatus.PAYMENT_PENDING,
    (RegistrationStatus.STARTED, RegistrationEvent.WITHDRAW): RegistrationStatus.CANCELLED,
    (RegistrationStatus.SUBMITTED, RegistrationEvent.WITHDRAW): RegistrationStatus.CANCELLED,
    (RegistrationStatus.PAYMENT_PENDING, RegistrationEvent.WITHDRAW): RegistrationStatus.CANCELLED,
    (RegistrationStatus.CONFIRMED, RegistrationEvent.WITHDRAW): RegistrationStatus.CANCELLED,
    (RegistrationStatus.STARTED, RegistrationEvent.EXPIRE_SWEEP): RegistrationStatus.CANCELLED,
    (RegistrationStatus.SUBMITTED, RegistrationEvent.EXPIRE_SWEEP): RegistrationStatus.CANCELLED,
    (RegistrationStatus.PAYMENT_PENDING, RegistrationEvent.EXPIRE_SWEEP): RegistrationStatus.CANCELLED,
}


class IllegalTransition(ValueError):
    pass


def next_status(current: RegistrationStatus | str, event: RegistrationEvent) -> RegistrationStatus:
    cur = RegistrationStatus(current)
    try:
        return TRANSITIONS[(cur, event)]
    except KeyError:
        raise IllegalTransition(f"{cur.value} --{event.value}--> ?") from None


def sources_for(event: RegistrationEvent) -> tuple[str, ...]:
    """Statuses an event may fire from; used as the `status IN (...)` guard of a CAS update."""
    return tuple(sorted(src.value for (src, ev) in TRANSITIONS if ev is event))


def is_provisional(status: RegistrationStatus | str) -> bool:
    try:
        return RegistrationStatus(status) in PROVISIONAL_STATUSES
    except ValueError:
        return False


class BatchStatus(str, Enum):
    UPLOADED = "uploaded"
    VALIDATED = "validated"
    FAILED = "failed"
    PROCESSED = "processed"


# a batch may be (re)processed or marked failed only from these
BATCH_PROCESSABLE: tuple[str, ...] = (BatchStatus.VALIDATED.value, BatchStatus.FAILED.value)


class InviteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


LIVE_INVITE_STATUSES: tuple[str, ...] = (InviteStatus.DRAFT.value, InviteStatus.SENT.value)
