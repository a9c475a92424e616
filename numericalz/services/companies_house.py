"""
Companies House API client
Fetches company profiles and feeds them into client records
"""
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Dict, Any, Tuple

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import CompaniesHouseError, NotFound, PersistenceError, ValidationError
from ..models.models import Client, User
from . import deadlines
from .activity import record_activity, ActivityTypes


logger = structlog.get_logger(__name__)

COMPANY_NUMBER_RE = re.compile(r"^([A-Z]{0,2})?(\d{6,8})$")

_COMPANY_TYPES = {
    "ltd": "LIMITED_COMPANY",
    "plc": "LIMITED_COMPANY",
}


def clean_company_number(company_number: str) -> str:
    return re.sub(r"\s", "", company_number or "").upper()


def is_valid_company_number(company_number: str) -> bool:
    return bool(COMPANY_NUMBER_RE.match(clean_company_number(company_number)))


def map_company_type(ch_type: Optional[str]) -> str:
    """Collapse Companies House company types into our categories."""
    return _COMPANY_TYPES.get((ch_type or "").lower(), "NON_LIMITED_COMPANY")


def _date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.warning("companies_house_date_malformed", value=value)
        return None


@dataclass
class CompanyProfile:
    company_number: str
    company_name: Optional[str] = None
    company_type: Optional[str] = None
    company_status: Optional[str] = None
    incorporation_date: Optional[date] = None
    accounting_reference_date: Optional[Tuple[int, int]] = None  # (day, month)
    last_accounts_made_up_to: Optional[date] = None
    next_accounts_due: Optional[date] = None
    next_made_up_to: Optional[date] = None
    next_confirmation_due: Optional[date] = None
    last_confirmation_made_up_to: Optional[date] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CompanyProfile":
        accounts = data.get("accounts") or {}
        confirmation = data.get("confirmation_statement") or {}
        return cls(
            company_number=data.get("company_number"),
            company_name=data.get("company_name"),
            company_type=data.get("type"),
            company_status=data.get("company_status"),
            incorporation_date=_date(data.get("date_of_creation")),
            accounting_reference_date=deadlines.parse_accounting_reference_date(accounts.get("accounting_reference_date")),
            last_accounts_made_up_to=_date((accounts.get("last_accounts") or {}).get("made_up_to")),
            next_accounts_due=_date(accounts.get("next_due")),
            next_made_up_to=_date(accounts.get("next_made_up_to")),
            next_confirmation_due=_date(confirmation.get("next_due")),
            last_confirmation_made_up_to=_date(confirmation.get("last_made_up_to")),
        )


class CompaniesHouseClient:
    """Client for the Companies House public data API"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key or settings.companies_house_api_key
        self.base_url = (base_url or settings.companies_house_base_url).rstrip("/")
        self.transport = transport

        if not self.api_key:
            raise CompaniesHouseError("Companies House API key not configured", status_code=503)

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        # API key is the basic-auth username with an empty password
        with httpx.Client(timeout=settings.companies_house_timeout, auth=(self.api_key, ""), transport=self.transport) as client:
            try:
                response = client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                logger.error("companies_house_unreachable", url=url, error=str(e))
                raise CompaniesHouseError("Failed to connect to Companies House API") from e

        if response.status_code == 404:
            raise NotFound("Company not found")
        if response.status_code == 429:
            raise CompaniesHouseError("Rate limit exceeded. Please try again later.", status_code=429)
        if response.status_code == 401:
            raise CompaniesHouseError("Invalid Companies House API key")
        if response.status_code >= 400:
            logger.error("companies_house_error", url=url, status=response.status_code)
            raise CompaniesHouseError(f"Companies House API error: {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            logger.error("companies_house_invalid_response", url=url, status=response.status_code)
            raise CompaniesHouseError("Invalid response from Companies House API") from e

    def fetch(self, company_number: str) -> CompanyProfile:
        cleaned = clean_company_number(company_number)
        if not COMPANY_NUMBER_RE.match(cleaned):
            raise ValidationError("Invalid company number", detail={"company_number": company_number})
        data = self._request("GET", f"/company/{cleaned}")
        return CompanyProfile.from_api(data)


def apply_company_profile(client: Client, profile: CompanyProfile, update_identity: bool = False) -> Client:
    """
    Copy registry reference data onto the client.

    Stored statutory dates come straight from Companies House; only the
    corporation tax due date is computed, from the official next year end
    when the registry provides one.
    """
    if update_identity:
        client.company_name = profile.company_name or client.company_name
        client.company_type = map_company_type(profile.company_type)
        client.company_number = profile.company_number or client.company_number
    client.company_status = profile.company_status
    client.incorporation_date = profile.incorporation_date
    client.last_accounts_made_up_to = profile.last_accounts_made_up_to
    client.next_accounts_due = profile.next_accounts_due
    client.next_year_end = profile.next_made_up_to
    client.next_confirmation_due = profile.next_confirmation_due
    client.last_confirmation_made_up_to = profile.last_confirmation_made_up_to
    if profile.accounting_reference_date:
        client.accounting_reference_day, client.accounting_reference_month = profile.accounting_reference_date

    if client.next_year_end:
        client.next_corporation_tax_due = deadlines.corporation_tax_due_from_year_end(client.next_year_end)
    else:
        client.next_corporation_tax_due = deadlines.calculate_corporation_tax_due(client)
    return client


def refresh_client(
    db: Session,
    client: Client,
    registry: CompaniesHouseClient,
    acting_user: Optional[User] = None,
    log_activity: bool = True,
) -> Client:
    if not client.company_number:
        raise ValidationError("Client has no company number", detail={"client_id": str(client.id)})

    profile = registry.fetch(client.company_number)
    apply_company_profile(client, profile)
    client.companies_house_refreshed_at = datetime.utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("companies_house_refresh_commit_failed", client_id=str(client.id), error=str(e))
        raise PersistenceError("Transaction failed and was rolled back", detail={"client_id": str(client.id)}) from e
    db.refresh(client)

    logger.info("companies_house_refreshed", client_id=str(client.id), company_number=client.company_number)
    if log_activity:
        record_activity(
            db,
            acting_user.id if acting_user else None,
            ActivityTypes.CLIENT_COMPANIES_HOUSE_REFRESHED,
            client_id=client.id,
            details={
                "company_number": client.company_number,
                "next_accounts_due": client.next_accounts_due.isoformat() if client.next_accounts_due else None,
                "next_corporation_tax_due": client.next_corporation_tax_due.isoformat() if client.next_corporation_tax_due else None,
            },
        )
    return client


def get_registry() -> CompaniesHouseClient:
    """FastAPI dependency; tests override it with a MockTransport-backed client."""
    return CompaniesHouseClient()
