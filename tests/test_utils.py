from decimal import Decimal

import pytest

from airlog.errors import InvalidPayload
from airlog.utils import (
    MAX_COUNT,
    diff_rows,
    format_hours,
    hhmm_to_hours,
    normalize_hhmm,
    normalize_payload,
    to_count,
    to_date_iso,
)


class TestTimeParsing:
    def test_half_hour(self):
        assert hhmm_to_hours("01:30") == Decimal("1.5")
        assert format_hours(hhmm_to_hours("01:30")) == "1.50"

    def test_zero(self):
        assert format_hours(hhmm_to_hours("00:00")) == "0.00"

    def test_absent_counts_as_zero(self):
        assert hhmm_to_hours(None) == 0
        assert hhmm_to_hours("") == 0
        assert hhmm_to_hours("   ") == 0

    def test_bare_number_is_decimal_hours(self):
        assert hhmm_to_hours("2") == Decimal("2")
        assert hhmm_to_hours("1.25") == Decimal("1.25")

    def test_minutes_out_of_range(self):
        with pytest.raises(ValueError):
            hhmm_to_hours("01:75")

    def test_garbage(self):
        with pytest.raises(ValueError):
            hhmm_to_hours("abc")
        with pytest.raises(ValueError):
            hhmm_to_hours("-1")
        with pytest.raises(ValueError):
            hhmm_to_hours("NaN")

    def test_format_rounds_half_up(self):
        # 00:01 is 0.01666...
        assert format_hours(hhmm_to_hours("00:01")) == "0.02"
        assert format_hours(Decimal("0.125")) == "0.13"

    def test_normalize_pads(self):
        assert normalize_hhmm("1:05") == "01:05"
        assert normalize_hhmm("123:00") == "123:00"
        assert normalize_hhmm(None) is None
        with pytest.raises(ValueError):
            normalize_hhmm("1.5")


class TestPayload:
    def test_totals_are_dropped(self):
        out = normalize_payload({"landings": 2, "total_landings": 999, "total_airframe_hr": "5.00"})
        assert out == {"landings": 2}

    def test_unknown_keys_dropped(self):
        assert normalize_payload({"foo": 1}) == {}

    def test_tail_number_upper(self):
        assert normalize_payload({"tlp_no": " n123ab "}) == {"tlp_no": "N123AB"}

    def test_empty_tail_number(self):
        with pytest.raises(InvalidPayload):
            normalize_payload({"tlp_no": "  "})

    def test_bad_hours(self):
        with pytest.raises(InvalidPayload):
            normalize_payload({"hours_flown_airframe": "1:99"})

    def test_counts(self):
        assert to_count("3", "landings") == 3
        assert to_count("1,200", "landings") == 1200
        assert to_count(None, "landings") is None
        assert to_count("", "landings") is None
        assert to_count("   ", "landings") is None
        assert to_count(2.0, "landings") == 2
        assert to_count(MAX_COUNT, "landings") == MAX_COUNT
        for bad in (-1, "x", 1.5, True, float("inf"), MAX_COUNT + 1, 10 ** 19):
            with pytest.raises(InvalidPayload):
                to_count(bad, "landings")

    def test_dates(self):
        assert to_date_iso("2024-01-02") == "2024-01-02"
        assert to_date_iso("2024-01-02T10:00:00") == "2024-01-02"
        assert to_date_iso("2024-01-02 10:00") == "2024-01-02"
        assert to_date_iso("2024-01-02T10:00:00.123Z") == "2024-01-02"
        for bad in ("", None, "02/01/2024", "2024-13-01", "2024-01-01garbage", "2024-01-01T", "2024-1-1"):
            with pytest.raises(InvalidPayload):
                to_date_iso(bad)


def test_diff_rows():
    assert diff_rows({"a": 1, "b": 2}, {"a": 1, "b": 3}) == {"b": {"from": 2, "to": 3}}
