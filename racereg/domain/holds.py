from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import sqlalchemy as sa

from ..config import get_settings
from ..models import Registration
from .states import PROVISIONAL_STATUSES, RegistrationStatus

DEFAULT_TTL_MIN = {
    RegistrationStatus.STARTED: 30,
    RegistrationStatus.SUBMITTED: 30,
    RegistrationStatus.PAYMENT_PENDING: 24 * 60,
}


def _ttl_minutes(status: RegistrationStatus) -> int:
    S = get_settings()
    configured = {
        RegistrationStatus.STARTED: S.HOLD_TTL_STARTED_MIN,
        RegistrationStatus.SUBMITTED: S.HOLD_TTL_SUBMITTED_MIN,
        RegistrationStatus.PAYMENT_PENDING: S.HOLD_TTL_PAYMENT_PENDING_MIN,
    }[status]
    return configured if configured and configured > 0 else DEFAULT_TTL_MIN[status]


def compute_expires_at(now: datetime, status: RegistrationStatus | str) -> datetime:
    st = RegistrationStatus(status)
    if st not in PROVISIONAL_STATUSES:
        raise ValueError(f"{st.value} is not a hold state")
    return now + timedelta(minutes=_ttl_minutes(st))


def is_expired_hold(status: RegistrationStatus | str, expires_at: Optional[datetime], now: datetime) -> bool:
    """Lazy expiry: a provisional hold is dead once its deadline has passed, whatever `status` says."""
    try:
        st = RegistrationStatus(status)
    except ValueError:
        return True
    if st is RegistrationStatus.CONFIRMED:
        return False
    if st is RegistrationStatus.CANCELLED:
        return True
    # a provisional row without a deadline is never counted as reserved either
    return expires_at is None or expires_at <= now


def reserved_clause(now: datetime):
    """SQL form of "this registration currently holds a slot"."""
    return sa.and_(
        Registration.deleted_at.is_(None),
        sa.or_(
            Registration.status == RegistrationStatus.CONFIRMED.value,
            sa.and_(
                Registration.status.in_([s.value for s in PROVISIONAL_STATUSES]),
                Registration.expires_at > now,
            ),
        ),
    )
