"""Statutory deadline rules."""

from datetime import date, datetime
from types import SimpleNamespace

import pytest

from numericalz.errors import DeadlineUnresolvable, ValidationError
from numericalz.services import deadlines


def company(**kwargs):
    data = {
        "id": "c1",
        "incorporation_date": None,
        "last_accounts_made_up_to": None,
        "next_accounts_due": None,
        "next_confirmation_due": None,
        "last_confirmation_made_up_to": None,
        "accounting_reference_day": None,
        "accounting_reference_month": None,
    }
    data.update(kwargs)
    return SimpleNamespace(**data)


class TestAccountingReferenceYear:
    def test_first_time_filer_uses_incorporation(self):
        c = company(incorporation_date=date(2023, 3, 15), accounting_reference_day=31, accounting_reference_month=12)
        assert deadlines.resolve_accounting_reference_year(c) == 2023

    def test_short_first_period_rolls_forward(self):
        c = company(incorporation_date=date(2023, 8, 1), accounting_reference_day=31, accounting_reference_month=12)
        assert deadlines.resolve_accounting_reference_year(c) == 2024

    def test_incorporated_on_reference_date(self):
        c = company(incorporation_date=date(2023, 12, 31), accounting_reference_day=31, accounting_reference_month=12)
        assert deadlines.resolve_accounting_reference_year(c) == 2024

    def test_established_filer_uses_last_accounts(self):
        c = company(
            incorporation_date=date(2015, 6, 1),
            last_accounts_made_up_to=date(2023, 12, 31),
            accounting_reference_day=31,
            accounting_reference_month=12,
        )
        assert deadlines.resolve_accounting_reference_year(c) == 2024

    def test_legacy_next_accounts_due_fallback(self):
        c = company(next_accounts_due=date(2025, 9, 30))
        assert deadlines.resolve_accounting_reference_year(c) == 2024

    def test_accepts_iso_strings(self):
        c = company(incorporation_date="2023-03-15", accounting_reference_day="31", accounting_reference_month="12")
        assert deadlines.resolve_accounting_reference_year(c) == 2023

    def test_unresolvable_raises(self):
        with pytest.raises(DeadlineUnresolvable):
            deadlines.resolve_accounting_reference_year(company())


class TestParseAccountingReferenceDate:
    @pytest.mark.parametrize("value", [
        {"day": "31", "month": "12"},
        '{"day": "31", "month": "12"}',
        "31/12",
        "31-12",
    ])
    def test_accepted_forms(self, value):
        assert deadlines.parse_accounting_reference_date(value) == (31, 12)

    @pytest.mark.parametrize("value", [None, "", "31/13", "30/02", "garbage", "{not json", 42])
    def test_malformed_returns_none(self, value):
        assert deadlines.parse_accounting_reference_date(value) is None

    def test_leap_day_accepted_and_clamped(self):
        assert deadlines.parse_accounting_reference_date("29/02") == (29, 2)
        c = company(incorporation_date=date(2022, 3, 1), accounting_reference_day=29, accounting_reference_month=2)
        assert deadlines.calculate_year_end(c) == date(2023, 2, 28)


class TestStatutoryDates:
    def test_all_dates_for_first_time_filer(self):
        c = company(incorporation_date=date(2023, 3, 15), accounting_reference_day=31, accounting_reference_month=12)
        dates = deadlines.calculate_all_statutory_dates(c)
        assert dates == {
            "year_end": date(2023, 12, 31),
            "accounts_due": date(2024, 9, 30),
            "corporation_tax_due": date(2024, 12, 31),
            "confirmation_statement_due": date(2024, 3, 29),
        }

    def test_stored_confirmation_due_wins(self):
        c = company(next_confirmation_due=date(2025, 7, 1), last_confirmation_made_up_to=date(2024, 1, 1))
        assert deadlines.calculate_confirmation_statement_due(c) == date(2025, 7, 1)

    def test_confirmation_from_last_statement(self):
        c = company(last_confirmation_made_up_to=date(2024, 6, 17))
        assert deadlines.calculate_confirmation_statement_due(c) == date(2025, 7, 1)

    def test_year_end_without_reference_date_uses_last_accounts(self):
        c = company(last_accounts_made_up_to=date(2024, 3, 31))
        assert deadlines.calculate_year_end(c) == date(2025, 3, 31)

    def test_missing_data_degrades_to_none(self):
        dates = deadlines.calculate_all_statutory_dates(company())
        assert all(v is None for v in dates.values())

    def test_malformed_reference_date_degrades_to_none(self):
        c = company(incorporation_date=date(2023, 3, 15), accounting_reference_day=31, accounting_reference_month=2)
        assert deadlines.calculate_accounts_due(c) is None

    def test_malformed_date_string_degrades_to_none(self):
        c = company(last_confirmation_made_up_to="not-a-date")
        assert deadlines.calculate_confirmation_statement_due(c) is None

    def test_ltd_filing_period_first_accounts_start_at_incorporation(self):
        c = company(incorporation_date=date(2023, 3, 15), accounting_reference_day=31, accounting_reference_month=12)
        assert deadlines.calculate_ltd_filing_period(c) == (date(2023, 3, 15), date(2023, 12, 31))

    def test_ltd_filing_period_follows_last_accounts(self):
        c = company(
            last_accounts_made_up_to=date(2023, 12, 31),
            accounting_reference_day=31,
            accounting_reference_month=12,
        )
        assert deadlines.calculate_ltd_filing_period(c) == (date(2024, 1, 1), date(2024, 12, 31))


class TestVATQuarters:
    def test_group_one_march_quarter(self):
        info = deadlines.calculate_vat_quarter("1", date(2025, 3, 1))
        assert info.quarter_start_date == date(2025, 1, 1)
        assert info.quarter_end_date == date(2025, 3, 31)
        assert info.filing_due_date == date(2025, 5, 7)
        assert info.quarter_period == "2025-01-01_to_2025-03-31"

    def test_quarter_spanning_year_end(self):
        info = deadlines.calculate_vat_quarter("2", date(2024, 12, 10))
        assert info.quarter_start_date == date(2024, 11, 1)
        assert info.quarter_end_date == date(2025, 1, 31)
        assert info.filing_due_date == date(2025, 3, 7)

    def test_february_quarter_end(self):
        info = deadlines.calculate_vat_quarter("3", date(2024, 1, 5))
        assert info.quarter_end_date == date(2024, 2, 29)
        assert info.filing_due_date == date(2024, 4, 7)

    def test_month_list_alias(self):
        assert deadlines.calculate_vat_quarter("3_6_9_12", date(2025, 3, 1)).quarter_group == "1"

    def test_next_quarter(self):
        info = deadlines.get_next_vat_quarter("1", date(2025, 3, 31))
        assert info.quarter_period == "2025-04-01_to_2025-06-30"

    def test_reference_date_inside_returned_quarter(self):
        for month in range(1, 13):
            ref = date(2025, month, 15)
            for group in ("1", "2", "3"):
                info = deadlines.calculate_vat_quarter(group, ref)
                assert info.quarter_start_date <= ref <= info.quarter_end_date

    def test_unknown_group_raises(self):
        with pytest.raises(ValidationError):
            deadlines.calculate_vat_quarter("4", date(2025, 1, 1))

    def test_display_format(self):
        assert deadlines.format_quarter_period_for_display("2025-01-01_to_2025-03-31") == "Jan - Mar 2025"
        assert deadlines.format_quarter_period_for_display("2024-11-01_to_2025-01-31") == "Nov 2024 - Jan 2025"
        assert deadlines.format_quarter_period_for_display("bad") == "bad"


class TestNonLtd:
    def test_year_end_and_filing_due(self):
        year_end = deadlines.calculate_non_ltd_year_end(2025)
        assert year_end == date(2025, 4, 5)
        assert deadlines.calculate_non_ltd_filing_due(year_end) == date(2026, 1, 5)

    @pytest.mark.parametrize("today,expected", [
        (date(2025, 4, 5), 2024),
        (date(2025, 4, 6), 2025),
        (date(2026, 1, 1), 2025),
    ])
    def test_current_tax_year(self, today, expected):
        assert deadlines.current_non_ltd_tax_year(today) == expected


class TestViewHelpers:
    def test_days_until_and_overdue(self):
        today = date(2025, 1, 10)
        assert deadlines.days_until(date(2025, 1, 20), today) == 10
        assert deadlines.is_overdue(date(2025, 1, 9), today)
        assert not deadlines.is_overdue(None, today)
        assert deadlines.days_until(datetime(2025, 1, 11, 9, 30), today) == 1

    def test_collect_deadlines_sorted(self):
        clients = [
            SimpleNamespace(id="a", company_name="A", company_number="1",
                            next_accounts_due=date(2025, 3, 1), next_confirmation_due=None,
                            next_corporation_tax_due=date(2025, 1, 1)),
            SimpleNamespace(id="b", company_name="B", company_number="2",
                            next_accounts_due=None, next_confirmation_due=date(2025, 2, 1),
                            next_corporation_tax_due=None),
        ]
        items = deadlines.collect_deadlines(clients, today=date(2025, 1, 15))
        assert [i["id"] for i in items] == ["a-corporation_tax", "b-confirmation", "a-accounts"]
        assert items[0]["is_overdue"] is True
        assert items[1]["days_until_due"] == 17
