from datetime import date, datetime, timedelta, timezone

import pytest

from racereg.domain.holds import compute_expires_at, is_expired_hold
from racereg.domain.identity import (
    hash_token,
    is_valid_email,
    normalize_email,
    parse_iso_date,
    to_date,
    to_iso_date_string,
)
from racereg.domain.states import (
    IllegalTransition,
    RegistrationEvent,
    RegistrationStatus,
    is_provisional,
    next_status,
    sources_for,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_email_normalization_trims_and_lowercases():
    assert normalize_email("  Ana.Perez@Example.COM ") == "ana.perez@example.com"
    assert normalize_email(None) == ""
    assert is_valid_email(" a@b.co ")
    assert not is_valid_email("a b@c.co")
    assert not is_valid_email("no-at-sign.com")


def test_iso_dates_must_be_real_and_exact():
    assert parse_iso_date("1990-01-15") == "1990-01-15"
    assert parse_iso_date(" 1990-01-15 ") == "1990-01-15"
    assert parse_iso_date("1990-02-30") is None
    assert parse_iso_date("15/01/1990") is None
    assert parse_iso_date("1990-1-5") is None
    assert to_date("2000-02-29") == date(2000, 2, 29)
    assert to_date("2001-02-29") is None


def test_stored_dates_compare_without_timezone_shift():
    late_evening = datetime(1990, 1, 15, 23, 30, tzinfo=timezone(timedelta(hours=-6)))
    assert to_iso_date_string(late_evening) == "1990-01-15"
    assert to_iso_date_string(date(1990, 1, 15)) == "1990-01-15"
    assert to_iso_date_string("1990-01-15T00:00:00Z") == "1990-01-15"
    assert to_iso_date_string(None) is None


def test_token_hash_is_stable_hex():
    h = hash_token("abc")
    assert h == hash_token("abc")
    assert len(h) == 64 and h != hash_token("abd")


@pytest.mark.parametrize(
    "status,expires_at,expired",
    [
        ("started", NOW + timedelta(seconds=1), False),
        ("started", NOW, True),
        ("submitted", NOW - timedelta(minutes=1), True),
        ("payment_pending", None, True),
        ("confirmed", None, False),
        ("confirmed", NOW - timedelta(days=3), False),
        ("cancelled", NOW + timedelta(days=1), True),
        ("bogus", NOW + timedelta(days=1), True),
    ],
)
def test_lazy_expiry(status, expires_at, expired):
    assert is_expired_hold(status, expires_at, NOW) is expired


def test_hold_deadlines_per_status():
    assert compute_expires_at(NOW, RegistrationStatus.STARTED) > NOW
    assert compute_expires_at(NOW, "payment_pending") > compute_expires_at(NOW, "submitted")
    with pytest.raises(ValueError):
        compute_expires_at(NOW, RegistrationStatus.CONFIRMED)


def test_lifecycle_transitions():
    assert next_status("started", RegistrationEvent.SUBMIT) is RegistrationStatus.SUBMITTED
    assert next_status("submitted", RegistrationEvent.FINALIZE_PAID) is RegistrationStatus.CONFIRMED
    assert next_status("started", RegistrationEvent.FINALIZE_UNPAID) is RegistrationStatus.PAYMENT_PENDING
    with pytest.raises(IllegalTransition):
        next_status("submitted", RegistrationEvent.SUBMIT)
    with pytest.raises(IllegalTransition):
        next_status("cancelled", RegistrationEvent.WITHDRAW)


def test_cas_guards():
    assert sources_for(RegistrationEvent.SUBMIT) == ("started",)
    assert sources_for(RegistrationEvent.FINALIZE_PAID) == ("started", "submitted")
    assert set(sources_for(RegistrationEvent.EXPIRE_SWEEP)) == {"started", "submitted", "payment_pending"}
    assert "confirmed" in sources_for(RegistrationEvent.WITHDRAW)
    assert is_provisional("payment_pending")
    assert not is_provisional("confirmed")
