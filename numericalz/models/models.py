import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def user_fk(nullable: bool = True) -> Mapped[Optional[uuid.UUID]]:
    return mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=nullable, index=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="STAFF")  # STAFF|MANAGER|PARTNER|ADMIN
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_number: Mapped[Optional[str]] = mapped_column(String(20), index=True)
    company_type: Mapped[str] = mapped_column(String(30), nullable=False, default="LIMITED_COMPANY")  # LIMITED_COMPANY|NON_LIMITED_COMPANY|DIRECTOR|SUB_CONTRACTOR
    company_status: Mapped[Optional[str]] = mapped_column(String(50))
    contact_name: Mapped[Optional[str]] = mapped_column(String(255))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Companies House reference data
    incorporation_date: Mapped[Optional[date]] = mapped_column(Date)
    last_accounts_made_up_to: Mapped[Optional[date]] = mapped_column(Date)
    next_accounts_due: Mapped[Optional[date]] = mapped_column(Date)
    next_year_end: Mapped[Optional[date]] = mapped_column(Date)
    last_confirmation_made_up_to: Mapped[Optional[date]] = mapped_column(Date)
    next_confirmation_due: Mapped[Optional[date]] = mapped_column(Date)
    next_corporation_tax_due: Mapped[Optional[date]] = mapped_column(Date)
    # Accounting reference date is day/month only; the year is always derived
    accounting_reference_day: Mapped[Optional[int]] = mapped_column(Integer)
    accounting_reference_month: Mapped[Optional[int]] = mapped_column(Integer)
    companies_house_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # VAT
    is_vat_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    vat_quarter_group: Mapped[Optional[str]] = mapped_column(String(20))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    # Assignment slots
    assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()
    ltd_company_assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()
    non_ltd_company_assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()
    vat_assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()

    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    assigned_user = relationship("User", foreign_keys=[assigned_user_id])
    vat_quarters = relationship("VATQuarter", back_populates="client", order_by="VATQuarter.quarter_end_date")
    ltd_workflows = relationship("LtdAccountsWorkflow", back_populates="client", order_by="LtdAccountsWorkflow.filing_period_end")
    non_ltd_workflows = relationship("NonLtdAccountsWorkflow", back_populates="client", order_by="NonLtdAccountsWorkflow.year_end_date")


class VATQuarter(Base):
    __tablename__ = "vat_quarters"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    quarter_period: Mapped[str] = mapped_column(String(40), nullable=False)  # 2025-01-01_to_2025-03-31
    quarter_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    quarter_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    filing_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    quarter_group: Mapped[str] = mapped_column(String(20), nullable=False)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False, default="CLIENT_BOOKKEEPING")
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()

    # Milestones (write-once per quarter)
    chase_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    chase_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    chase_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    paperwork_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paperwork_received_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    paperwork_received_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    work_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    work_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    work_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    work_finished_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    work_finished_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    work_finished_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    sent_to_client_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_to_client_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    sent_to_client_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    client_approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_approved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    client_approved_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    filed_to_hmrc_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    filed_to_hmrc_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    filed_to_hmrc_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="vat_quarters")
    history = relationship("VATWorkflowHistory", back_populates="workflow", order_by="VATWorkflowHistory.stage_changed_at")

    __table_args__ = (
        Index("idx_vat_quarter_client_period", "client_id", "quarter_period"),
    )


class VATWorkflowHistory(Base):
    """Append-only stage ledger for VAT quarters"""
    __tablename__ = "vat_workflow_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    vat_quarter_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vat_quarters.id"), nullable=False, index=True)
    from_stage: Mapped[Optional[str]] = mapped_column(String(50))
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    days_in_previous_stage: Mapped[Optional[int]] = mapped_column(Integer)
    # Actor snapshot taken at action time, never joined live
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    workflow = relationship("VATQuarter", back_populates="history")


class LtdAccountsWorkflow(Base):
    __tablename__ = "ltd_accounts_workflows"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    filing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    filing_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    accounts_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    ct_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    cs_due_date: Mapped[Optional[date]] = mapped_column(Date)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False, default="WAITING_FOR_YEAR_END")
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()

    chase_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    chase_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    chase_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    paperwork_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paperwork_received_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    paperwork_received_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    work_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    work_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    work_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    manager_discussion_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    manager_discussion_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    manager_discussion_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    partner_review_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    partner_review_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    partner_review_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    review_completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    review_completed_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    review_completed_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    sent_to_client_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_to_client_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    sent_to_client_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    client_approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_approved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    client_approved_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    partner_approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    partner_approved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    partner_approved_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    filed_to_companies_house_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    filed_to_companies_house_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    filed_to_companies_house_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    filed_to_hmrc_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    filed_to_hmrc_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    filed_to_hmrc_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    client_self_filing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_self_filing_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    client_self_filing_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="ltd_workflows")
    history = relationship("LtdAccountsWorkflowHistory", back_populates="workflow", order_by="LtdAccountsWorkflowHistory.stage_changed_at")

    __table_args__ = (
        Index("idx_ltd_workflow_client_period", "client_id", "filing_period_end"),
    )


class LtdAccountsWorkflowHistory(Base):
    __tablename__ = "ltd_accounts_workflow_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    ltd_accounts_workflow_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("ltd_accounts_workflows.id"), nullable=False, index=True)
    from_stage: Mapped[Optional[str]] = mapped_column(String(50))
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    days_in_previous_stage: Mapped[Optional[int]] = mapped_column(Integer)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    workflow = relationship("LtdAccountsWorkflow", back_populates="history")


class NonLtdAccountsWorkflow(Base):
    """Sole traders and partnerships: fixed 5 April year end"""
    __tablename__ = "non_ltd_accounts_workflows"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    year_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    filing_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False, default="WAITING_FOR_YEAR_END")
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    assigned_user_id: Mapped[Optional[uuid.UUID]] = user_fk()

    chase_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    chase_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    chase_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    paperwork_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paperwork_received_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    paperwork_received_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    work_started_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    work_started_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    work_started_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    manager_discussion_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    manager_discussion_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    manager_discussion_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    partner_review_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    partner_review_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    partner_review_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    review_completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    review_completed_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    review_completed_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    sent_to_client_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_to_client_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    sent_to_client_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    client_approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_approved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    client_approved_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    partner_approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    partner_approved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    partner_approved_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    filed_to_hmrc_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    filed_to_hmrc_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    filed_to_hmrc_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))
    client_self_filing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_self_filing_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    client_self_filing_by_user_name: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="non_ltd_workflows")
    history = relationship("NonLtdAccountsWorkflowHistory", back_populates="workflow", order_by="NonLtdAccountsWorkflowHistory.stage_changed_at")

    __table_args__ = (
        Index("idx_non_ltd_workflow_client_year", "client_id", "year_end_date"),
    )


class NonLtdAccountsWorkflowHistory(Base):
    __tablename__ = "non_ltd_accounts_workflow_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    non_ltd_accounts_workflow_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("non_ltd_accounts_workflows.id"), nullable=False, index=True)
    from_stage: Mapped[Optional[str]] = mapped_column(String(50))
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    days_in_previous_stage: Mapped[Optional[int]] = mapped_column(Integer)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    workflow = relationship("NonLtdAccountsWorkflow", back_populates="history")


class ActivityLog(Base):
    """Append-only system-wide audit trail, independent of workflow history"""
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    action: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    # No FK: the entry outlives a deleted client
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_activity_client_time", "client_id", "timestamp"),
    )


class Communication(Base):
    __tablename__ = "communications"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), default="EMAIL")
    subject: Mapped[Optional[str]] = mapped_column(String(500))
    content: Mapped[Optional[str]] = mapped_column(Text)
    sent_by_id: Mapped[Optional[uuid.UUID]] = user_fk()
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class BulkJob(Base):
    """Durable progress record for long-running bulk operations"""
    __tablename__ = "bulk_jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)  # BulkOperation value, e.g. refresh_companies_house
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending|processing|completed|failed
    total: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    target_ids: Mapped[Optional[list]] = mapped_column(JSON)
    results: Mapped[Optional[dict]] = mapped_column(JSON)  # {successful: [...], failed: [{id, error}]}
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[uuid.UUID]] = user_fk()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
