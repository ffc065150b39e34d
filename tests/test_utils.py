from datetime import datetime, timezone, timedelta

import pytest

from listit.utils import (
    DEFAULT_COLOR,
    append_query,
    is_valid_email,
    normalize_color,
    parse_timestamp,
    parse_wait_seconds,
    safe_next_path,
    to_iso,
    validate_password_strength,
)


def test_parse_timestamp_variants():
    assert parse_timestamp(None) is None
    assert parse_timestamp('') is None
    assert parse_timestamp('not a date') is None
    naive = parse_timestamp('2024-03-01T10:30:00')
    assert naive == datetime(2024, 3, 1, 10, 30, tzinfo=timezone.utc)
    offset = parse_timestamp('2024-03-01T12:30:00+02:00')
    assert offset == naive
    assert offset.tzinfo == timezone.utc


def test_to_iso_assumes_utc_for_naive():
    assert to_iso(None) is None
    assert to_iso(datetime(2024, 1, 2, 3, 4, 5)) == '2024-01-02T03:04:05+00:00'
    eastern = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone(timedelta(hours=-5)))
    assert to_iso(eastern).endswith('-05:00')


@pytest.mark.parametrize('password,expected', [
    ('Ab1!', 'Password must be at least 8 characters long'),
    ('abcdefg1!', 'Password must contain at least one uppercase letter'),
    ('ABCDEFG1!', 'Password must contain at least one lowercase letter'),
    ('Abcdefgh!', 'Password must contain at least one number'),
    ('Abcdefgh1', 'Password must contain at least one special character'),
    ('Abcdefg1!', None),
])
def test_password_strength(password, expected):
    assert validate_password_strength(password) == expected


def test_email_validation():
    assert is_valid_email('someone@example.com')
    assert not is_valid_email('someone@example')
    assert not is_valid_email('some one@example.com')
    assert not is_valid_email('')


def test_parse_wait_seconds():
    msg = 'For security purposes, you can only request this after 42 seconds.'
    assert parse_wait_seconds(msg) == 42
    assert parse_wait_seconds('after 1 second') == 1
    assert parse_wait_seconds('Invalid login credentials') is None
    assert parse_wait_seconds(None) is None


def test_normalize_color():
    assert normalize_color('#007aff') == '#007AFF'
    assert normalize_color('#123456') == DEFAULT_COLOR
    assert normalize_color(None) == DEFAULT_COLOR


def test_safe_next_path_rejects_offsite_targets():
    assert safe_next_path('/List/3') == '/List/3'
    assert safe_next_path('') == '/dashboard'
    assert safe_next_path('https://evil.example/phish') == '/dashboard'
    assert safe_next_path('//evil.example') == '/dashboard'
    assert safe_next_path('relative/path', default='/') == '/'


def test_append_query():
    assert append_query('/login', redirectTo='/dashboard') == '/login?redirectTo=%2Fdashboard'
    assert append_query('/login?logout=true', error='x y') == '/login?logout=true&error=x+y'
