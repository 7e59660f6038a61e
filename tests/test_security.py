"""Tests for access tokens and time helpers."""

from datetime import date, datetime, timedelta

import pytest
from jose import jwt

from app.config import settings
from app.core.security import create_access_token, decode_access_token
from app.core.time_utils import (
    day_of_week,
    ensure_aware,
    format_minutes,
    get_zone,
    local_instant,
    parse_hhmm,
)


def test_access_token_round_trip():
    token = create_access_token(30, "STAFF", ["FRONT_DESK"])

    payload = decode_access_token(token)

    assert payload["sub"] == "30"
    assert payload["user_type"] == "STAFF"
    assert payload["roles"] == ["FRONT_DESK"]
    assert payload["type"] == "access"


def test_expired_token_rejected():
    token = create_access_token(30, "STAFF", expires_delta=timedelta(seconds=-5))
    assert decode_access_token(token) is None


def test_refresh_token_rejected():
    token = jwt.encode(
        {"sub": "30", "user_type": "STAFF", "type": "refresh"},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    assert decode_access_token(token) is None


def test_foreign_signature_rejected():
    token = jwt.encode(
        {"sub": "30", "user_type": "STAFF", "type": "access"},
        "someone-elses-secret",
        algorithm="HS256",
    )
    assert decode_access_token(token) is None


def test_day_of_week_starts_on_sunday():
    assert day_of_week(date(2026, 11, 1)) == 0  # Sunday
    assert day_of_week(date(2026, 11, 2)) == 1
    assert day_of_week(date(2026, 11, 7)) == 6


@pytest.mark.parametrize("value", ["9", "25:00", "12:60", "ab:cd", "24:30"])
def test_parse_hhmm_rejects(value):
    with pytest.raises(ValueError):
        parse_hhmm(value)


def test_parse_and_format_minutes():
    assert parse_hhmm(" 07:05 ") == 425
    assert parse_hhmm("24:00") == 1440
    assert format_minutes(425) == "07:05"


def test_ensure_aware_keeps_offsets():
    zone = get_zone("Asia/Kolkata")
    naive = datetime(2026, 11, 2, 9, 0)
    aware = datetime(2026, 11, 2, 9, 0, tzinfo=get_zone("UTC"))

    assert ensure_aware(naive, zone).utcoffset() == timedelta(hours=5, minutes=30)
    assert ensure_aware(aware, zone) is aware


def test_local_instant_across_dst():
    """Local wall-clock minutes stay fixed when the UTC offset changes."""
    zone = get_zone("Europe/London")
    before = local_instant(date(2026, 10, 24), 9 * 60, zone)
    after = local_instant(date(2026, 10, 26), 9 * 60, zone)

    assert before.hour == after.hour == 9
    assert before.utcoffset() == timedelta(hours=1)
    assert after.utcoffset() == timedelta(0)


def test_unknown_timezone():
    with pytest.raises(ValueError, match="Unknown timezone"):
        get_zone("Mars/Olympus_Mons")
