import uuid
from datetime import date, datetime
from typing import Optional, List

from pydantic import BaseModel, field_validator


COMPANY_TYPES = ("LIMITED_COMPANY", "NON_LIMITED_COMPANY", "DIRECTOR", "SUB_CONTRACTOR")


class ClientBase(BaseModel):
    client_code: Optional[str] = None
    company_name: str
    company_number: Optional[str] = None
    company_type: str = "LIMITED_COMPANY"
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None

    incorporation_date: Optional[date] = None
    last_accounts_made_up_to: Optional[date] = None
    next_accounts_due: Optional[date] = None
    next_confirmation_due: Optional[date] = None
    last_confirmation_made_up_to: Optional[date] = None
    accounting_reference_day: Optional[int] = None
    accounting_reference_month: Optional[int] = None

    is_vat_enabled: bool = False
    vat_quarter_group: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('client_code', 'company_number', 'contact_name', 'contact_email', 'vat_quarter_group', 'notes', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator('company_type', mode='before')
    @classmethod
    def known_company_type(cls, v):
        v = str(v or "").strip().upper()
        if v not in COMPANY_TYPES:
            raise ValueError(f"company_type must be one of {', '.join(COMPANY_TYPES)}")
        return v


class ClientCreate(ClientBase):
    assigned_user_id: Optional[uuid.UUID] = None


class ClientUpdate(BaseModel):
    company_name: Optional[str] = None
    company_number: Optional[str] = None
    company_type: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    incorporation_date: Optional[date] = None
    last_accounts_made_up_to: Optional[date] = None
    next_accounts_due: Optional[date] = None
    next_confirmation_due: Optional[date] = None
    last_confirmation_made_up_to: Optional[date] = None
    accounting_reference_day: Optional[int] = None
    accounting_reference_month: Optional[int] = None
    is_vat_enabled: Optional[bool] = None
    vat_quarter_group: Optional[str] = None
    notes: Optional[str] = None


class ClientResponse(ClientBase):
    id: uuid.UUID
    company_status: Optional[str] = None
    next_year_end: Optional[date] = None
    next_corporation_tax_due: Optional[date] = None
    is_active: bool = True
    assigned_user_id: Optional[uuid.UUID] = None
    ltd_company_assigned_user_id: Optional[uuid.UUID] = None
    non_ltd_company_assigned_user_id: Optional[uuid.UUID] = None
    vat_assigned_user_id: Optional[uuid.UUID] = None
    companies_house_refreshed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClientAssignRequest(BaseModel):
    category: str = "general"  # general|accounts-ltd|accounts-non-ltd|vat
    user_id: Optional[uuid.UUID] = None


class DeadlinesResponse(BaseModel):
    client_id: str
    accounting_reference_year: Optional[int] = None
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None
    corporation_tax_due: Optional[date] = None
    confirmation_statement_due: Optional[date] = None
    vat_quarter: Optional[dict] = None
    warnings: List[str] = []
