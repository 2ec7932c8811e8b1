"""
Tests for business-date parsing and resolution.
"""
from datetime import date, datetime, time

import pytz

from app.services.business_date import (
    get_timezone,
    parse_business_date,
    parse_timestamp,
    resolve_business_date,
    resolve_sale_time,
)


class TestParseBusinessDate:

    def test_toast_integer_form(self):
        assert parse_business_date(20260214) == date(2026, 2, 14)

    def test_string_forms(self):
        assert parse_business_date("20260214") == date(2026, 2, 14)
        assert parse_business_date("2026-02-14") == date(2026, 2, 14)

    def test_date_and_datetime_objects(self):
        assert parse_business_date(date(2026, 2, 14)) == date(2026, 2, 14)
        assert parse_business_date(datetime(2026, 2, 14, 23, 59)) == date(2026, 2, 14)

    def test_empty_values(self):
        assert parse_business_date(None) is None
        assert parse_business_date("") is None


class TestParseTimestamp:

    def test_offset_converted_to_naive_utc(self):
        assert parse_timestamp("2026-02-14T20:30:00.000-0600") == datetime(2026, 2, 15, 2, 30)

    def test_zulu(self):
        assert parse_timestamp("2026-02-15T02:30:00Z") == datetime(2026, 2, 15, 2, 30)

    def test_naive_passthrough(self):
        assert parse_timestamp(datetime(2026, 2, 15, 2, 30)) == datetime(2026, 2, 15, 2, 30)
        assert parse_timestamp(None) is None


class TestResolve:

    def test_explicit_business_date_preferred(self):
        resolved = resolve_business_date(date(2026, 2, 13), datetime(2026, 2, 15, 2, 30), None, "America/Chicago")
        assert resolved == date(2026, 2, 13)

    def test_late_night_check_stays_on_local_day(self):
        resolved = resolve_business_date(None, datetime(2026, 2, 15, 2, 30), None, "America/Chicago")
        assert resolved == date(2026, 2, 14)

    def test_same_instant_differs_by_timezone(self):
        closed = datetime(2026, 2, 15, 2, 30)
        assert resolve_business_date(None, closed, None, "America/Chicago") == date(2026, 2, 14)
        assert resolve_business_date(None, closed, None, "Europe/London") == date(2026, 2, 15)

    def test_nothing_to_resolve_from(self):
        assert resolve_business_date(None, None, None, "America/Chicago") is None
        assert resolve_sale_time(None, None, "America/Chicago") is None

    def test_sale_time_drops_microseconds(self):
        assert resolve_sale_time(datetime(2026, 2, 15, 2, 30, 5, 123456), None, "America/Chicago") == time(20, 30, 5)


def test_unknown_timezone_falls_back_to_default():
    assert get_timezone("Mars/Olympus_Mons") == pytz.timezone("America/Chicago")
    assert get_timezone(None) == pytz.timezone("America/Chicago")
