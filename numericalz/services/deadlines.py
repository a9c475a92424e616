"""
Statutory deadline calculator.

Pure functions over already-fetched company data. Nothing here touches the
database or the network. Malformed or missing dates degrade to None and are
logged; only ``resolve_accounting_reference_year`` raises, and its callers in
this module turn that into None.
"""
import calendar
import json
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import pytz
import structlog
from dateutil.relativedelta import relativedelta

from ..config import settings
from ..errors import DeadlineUnresolvable, ValidationError


logger = structlog.get_logger(__name__)

# UK rule: the first accounting period must be at least 6 months long
FIRST_PERIOD_MIN_MONTHS = 6
ACCOUNTS_DUE_MONTHS = 9
CORPORATION_TAX_DUE_MONTHS = 12
CONFIRMATION_GRACE_DAYS = 14
VAT_FILING_EXTRA_DAYS = 7

# Sole traders and partnerships follow the personal tax year
NON_LTD_YEAR_END = (4, 5)  # (month, day)
NON_LTD_TAX_YEAR_START = (4, 6)

# HMRC stagger -> months in which quarters end
VAT_QUARTER_GROUPS: Dict[str, Tuple[int, int, int, int]] = {
    "1": (3, 6, 9, 12),
    "2": (1, 4, 7, 10),
    "3": (2, 5, 8, 11),
}
VAT_QUARTER_GROUP_ALIASES = {
    "3_6_9_12": "1",
    "1_4_7_10": "2",
    "2_5_8_11": "3",
}


class VATQuarterInfo(NamedTuple):
    quarter_period: str
    quarter_start_date: date
    quarter_end_date: date
    filing_due_date: date
    quarter_group: str


class FilingPeriod(NamedTuple):
    start: date
    end: date


def today_london() -> date:
    """Current calendar date in the firm's timezone."""
    tz = pytz.timezone(settings.tz_default)
    return datetime.now(tz).date()


def _as_date(value: Any, field: Optional[str] = None) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            logger.warning("deadline_date_malformed", field=field, value=value)
            return None
    logger.warning("deadline_date_malformed", field=field, value=repr(value))
    return None


def _valid_day_month(day: Any, month: Any) -> Optional[Tuple[int, int]]:
    try:
        day, month = int(day), int(month)
    except (TypeError, ValueError):
        return None
    if not 1 <= month <= 12:
        return None
    # 2000 is a leap year, so 29 Feb is accepted here and clamped later
    if not 1 <= day <= calendar.monthrange(2000, month)[1]:
        return None
    return day, month


def _ard(client) -> Optional[Tuple[int, int]]:
    day = getattr(client, "accounting_reference_day", None)
    month = getattr(client, "accounting_reference_month", None)
    if day is None or month is None:
        return None
    parsed = _valid_day_month(day, month)
    if parsed is None:
        logger.warning(
            "accounting_reference_date_malformed",
            client_id=str(getattr(client, "id", "")),
            day=day,
            month=month,
        )
    return parsed


def _make_date(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def _month_end(d: date) -> date:
    return _make_date(d.year, d.month, 31)


def parse_accounting_reference_date(value: Any) -> Optional[Tuple[int, int]]:
    """
    Parse an accounting reference date into ``(day, month)``.

    Accepts the Companies House ``{"day": "31", "month": "12"}`` mapping, its
    JSON string form, or ``"DD/MM"``. Anything else returns None.
    """
    if value is None or value == "":
        return None
    raw = value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("{"):
            try:
                raw = json.loads(text)
            except ValueError:
                logger.warning("accounting_reference_date_unparseable", value=value)
                return None
        else:
            for sep in ("/", "-"):
                if sep in text:
                    parts = text.split(sep)
                    if len(parts) == 2:
                        parsed = _valid_day_month(parts[0], parts[1])
                        if parsed is None:
                            logger.warning("accounting_reference_date_unparseable", value=value)
                        return parsed
            logger.warning("accounting_reference_date_unparseable", value=value)
            return None
    if isinstance(raw, dict):
        parsed = _valid_day_month(raw.get("day"), raw.get("month"))
        if parsed is None:
            logger.warning("accounting_reference_date_unparseable", value=value)
        return parsed
    logger.warning("accounting_reference_date_unparseable", value=repr(value))
    return None


def first_accounting_reference_date(incorporation: date, day: int, month: int) -> date:
    """First ARD after incorporation that leaves a first period of 6 to 18 months."""
    candidate = _make_date(incorporation.year, month, day)
    if candidate <= incorporation:
        candidate = _make_date(incorporation.year + 1, month, day)
    if candidate < incorporation + relativedelta(months=FIRST_PERIOD_MIN_MONTHS):
        candidate = _make_date(candidate.year + 1, month, day)
    return candidate


def resolve_accounting_reference_year(client) -> int:
    """
    Year of the client's next accounting reference date.

    Established filers use the year after their last accounts. First-time
    filers derive it from incorporation and the stored day/month. The
    ``next_accounts_due`` fallback is a legacy approximation kept for records
    that have neither.
    """
    last_accounts = _as_date(getattr(client, "last_accounts_made_up_to", None), "last_accounts_made_up_to")
    if last_accounts:
        return last_accounts.year + 1

    incorporation = _as_date(getattr(client, "incorporation_date", None), "incorporation_date")
    ard = _ard(client)
    if incorporation and ard:
        day, month = ard
        return first_accounting_reference_date(incorporation, day, month).year

    next_due = _as_date(getattr(client, "next_accounts_due", None), "next_accounts_due")
    if next_due:
        return next_due.year - 1

    raise DeadlineUnresolvable(
        "Not enough company data to resolve the accounting reference year",
        detail={"client_id": str(getattr(client, "id", ""))},
    )


def accounting_reference_date_to_calendar(client) -> Optional[date]:
    ard = _ard(client)
    if ard is None:
        return None
    try:
        year = resolve_accounting_reference_year(client)
    except DeadlineUnresolvable:
        return None
    day, month = ard
    return _make_date(year, month, day)


def calculate_year_end(client) -> Optional[date]:
    year_end = accounting_reference_date_to_calendar(client)
    if year_end:
        return year_end
    last_accounts = _as_date(getattr(client, "last_accounts_made_up_to", None), "last_accounts_made_up_to")
    if last_accounts:
        return last_accounts + relativedelta(years=1)
    return None


def accounts_due_from_year_end(year_end: date) -> date:
    return year_end + relativedelta(months=ACCOUNTS_DUE_MONTHS)


def corporation_tax_due_from_year_end(year_end: date) -> date:
    return year_end + relativedelta(months=CORPORATION_TAX_DUE_MONTHS)


def calculate_accounts_due(client) -> Optional[date]:
    year_end = calculate_year_end(client)
    if not year_end:
        return None
    return accounts_due_from_year_end(year_end)


def calculate_corporation_tax_due(client) -> Optional[date]:
    year_end = calculate_year_end(client)
    if not year_end:
        return None
    return corporation_tax_due_from_year_end(year_end)


def calculate_confirmation_statement_due(client) -> Optional[date]:
    stored = _as_date(getattr(client, "next_confirmation_due", None), "next_confirmation_due")
    if stored:
        return stored
    base = _as_date(getattr(client, "last_confirmation_made_up_to", None), "last_confirmation_made_up_to") or _as_date(
        getattr(client, "incorporation_date", None), "incorporation_date"
    )
    if not base:
        return None
    return base + relativedelta(years=1) + timedelta(days=CONFIRMATION_GRACE_DAYS)


def calculate_ltd_filing_period(client) -> Optional[FilingPeriod]:
    """Accounting period that ends on the next year end. First periods start at incorporation."""
    end = calculate_year_end(client)
    if not end:
        return None
    last_accounts = _as_date(getattr(client, "last_accounts_made_up_to", None))
    incorporation = _as_date(getattr(client, "incorporation_date", None))
    if last_accounts:
        start = last_accounts + timedelta(days=1)
    elif incorporation and incorporation < end:
        start = incorporation
    else:
        start = end - relativedelta(years=1) + timedelta(days=1)
    return FilingPeriod(start=start, end=end)


def calculate_all_statutory_dates(client) -> Dict[str, Optional[date]]:
    return {
        "year_end": calculate_year_end(client),
        "accounts_due": calculate_accounts_due(client),
        "corporation_tax_due": calculate_corporation_tax_due(client),
        "confirmation_statement_due": calculate_confirmation_statement_due(client),
    }


# ---------------- VAT ----------------

def normalize_quarter_group(quarter_group: Any) -> str:
    key = str(quarter_group).strip() if quarter_group is not None else ""
    key = VAT_QUARTER_GROUP_ALIASES.get(key, key)
    if key not in VAT_QUARTER_GROUPS:
        raise ValidationError(
            f"Unknown VAT quarter group: {quarter_group!r}",
            detail={"quarter_group": quarter_group},
        )
    return key


def format_quarter_period(start: date, end: date) -> str:
    return f"{start.isoformat()}_to_{end.isoformat()}"


def calculate_vat_quarter(quarter_group: Any, reference_date: Optional[date] = None) -> VATQuarterInfo:
    """
    The VAT quarter of ``quarter_group`` that contains ``reference_date``.

    Filing is due one calendar month and seven days after the quarter ends.
    """
    group = normalize_quarter_group(quarter_group)
    ref = _as_date(reference_date, "reference_date") or today_london()

    end_month = next(m for m in VAT_QUARTER_GROUPS[group] if (ref.month - m) % 12 in (0, 10, 11))
    end_year = ref.year if end_month >= ref.month else ref.year + 1
    quarter_end = _make_date(end_year, end_month, 31)
    quarter_start = date(end_year, end_month, 1) - relativedelta(months=2)
    filing_due = _month_end(quarter_end + relativedelta(months=1)) + timedelta(days=VAT_FILING_EXTRA_DAYS)

    return VATQuarterInfo(
        quarter_period=format_quarter_period(quarter_start, quarter_end),
        quarter_start_date=quarter_start,
        quarter_end_date=quarter_end,
        filing_due_date=filing_due,
        quarter_group=group,
    )


def get_next_vat_quarter(quarter_group: Any, current_quarter_end: date) -> VATQuarterInfo:
    return calculate_vat_quarter(quarter_group, current_quarter_end + timedelta(days=1))


def parse_quarter_period(quarter_period: str) -> Optional[Tuple[date, date]]:
    try:
        start_text, end_text = quarter_period.split("_to_")
        return date.fromisoformat(start_text), date.fromisoformat(end_text)
    except (AttributeError, ValueError):
        logger.warning("quarter_period_malformed", quarter_period=quarter_period)
        return None


def format_quarter_period_for_display(quarter_period: str) -> str:
    parsed = parse_quarter_period(quarter_period)
    if not parsed:
        return quarter_period or ""
    start, end = parsed
    if start.year == end.year:
        return f"{start:%b} - {end:%b} {end.year}"
    return f"{start:%b} {start.year} - {end:%b} {end.year}"


# ---------------- Non-Ltd ----------------

def calculate_non_ltd_year_end(year: int) -> date:
    month, day = NON_LTD_YEAR_END
    return date(year, month, day)


def calculate_non_ltd_filing_due(year_end: date) -> date:
    return year_end + relativedelta(months=ACCOUNTS_DUE_MONTHS)


def current_non_ltd_tax_year(today: Optional[date] = None) -> int:
    """Tax year runs 6 April to 5 April; returns the year it started in."""
    today = today or today_london()
    month, day = NON_LTD_TAX_YEAR_START
    if today < date(today.year, month, day):
        return today.year - 1
    return today.year


# ---------------- Helpers for views ----------------

def days_until(due: Any, today: Optional[date] = None) -> Optional[int]:
    due_date = _as_date(due, "due")
    if due_date is None:
        return None
    return (due_date - (today or today_london())).days


def is_overdue(due: Any, today: Optional[date] = None) -> bool:
    remaining = days_until(due, today)
    return remaining is not None and remaining < 0


def collect_deadlines(clients, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """Flatten stored statutory dates into a list sorted by due date."""
    today = today or today_london()
    kinds = (
        ("accounts", "next_accounts_due"),
        ("confirmation", "next_confirmation_due"),
        ("corporation_tax", "next_corporation_tax_due"),
    )
    items = []
    for client in clients:
        for kind, attr in kinds:
            due = _as_date(getattr(client, attr, None), attr)
            if not due:
                continue
            remaining = (due - today).days
            items.append({
                "id": f"{client.id}-{kind}",
                "client_id": str(client.id),
                "client_name": client.company_name,
                "company_number": client.company_number,
                "type": kind,
                "due_date": due.isoformat(),
                "days_until_due": remaining,
                "is_overdue": remaining < 0,
            })
    items.sort(key=lambda item: item["due_date"])
    return items
