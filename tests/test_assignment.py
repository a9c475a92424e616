"""Assignment resolution across the workflow, category and general tiers."""

from datetime import date
from types import SimpleNamespace

import pytest

from numericalz.errors import NotFound, ValidationError
from numericalz.models.models import ActivityLog
from numericalz.services import assignment, workflow_engine
from numericalz.services.activity import ActivityTypes


def fake_client(**slots):
    data = {
        "assigned_user_id": None,
        "ltd_company_assigned_user_id": None,
        "non_ltd_company_assigned_user_id": None,
        "vat_assigned_user_id": None,
    }
    data.update(slots)
    return SimpleNamespace(**data)


class TestResolveAssignment:
    def test_general_only_falls_through(self):
        client = fake_client(assigned_user_id="general-user")
        assert assignment.resolve_assignment(client, "vat") == "general-user"
        assert assignment.resolve_assignment(client, "accounts-ltd") == "general-user"

    def test_category_slot_beats_general(self):
        client = fake_client(assigned_user_id="general-user", vat_assigned_user_id="vat-user")
        assert assignment.resolve_assignment(client, "vat") == "vat-user"
        assert assignment.resolve_assignment(client, "general") == "general-user"

    def test_workflow_assignee_wins(self):
        client = fake_client(assigned_user_id="general-user", ltd_company_assigned_user_id="ltd-user")
        wf = SimpleNamespace(assigned_user_id="wf-user")
        assert assignment.resolve_assignment(client, "accounts-ltd", wf) == "wf-user"

    def test_unassigned_workflow_falls_back(self):
        client = fake_client(non_ltd_company_assigned_user_id="non-ltd-user")
        wf = SimpleNamespace(assigned_user_id=None)
        assert assignment.resolve_assignment(client, "accounts-non-ltd", wf) == "non-ltd-user"

    def test_general_ignores_workflow(self):
        client = fake_client(assigned_user_id="general-user")
        wf = SimpleNamespace(assigned_user_id="wf-user")
        assert assignment.resolve_assignment(client, "general", wf) == "general-user"

    def test_nobody(self):
        assert assignment.resolve_assignment(fake_client(), "vat") is None

    @pytest.mark.parametrize("raw,expected", [("ltd", "accounts-ltd"), ("ACCOUNTS_NON_LTD", "accounts-non-ltd"), ("VAT", "vat")])
    def test_category_aliases(self, raw, expected):
        assert assignment.normalize_category(raw) == expected

    def test_unknown_category(self):
        with pytest.raises(ValidationError):
            assignment.resolve_assignment(fake_client(), "payroll")


class TestAssignmentWithDatabase:
    def test_open_workflow_assignee_is_effective(self, db, vat_client, staff, manager):
        vat_client.vat_assigned_user_id = manager.id
        db.commit()
        quarter = workflow_engine.create_vat_quarter(db, vat_client, reference_date=date(2025, 3, 1))
        assert assignment.effective_assignee(db, vat_client, "vat") == manager.id

        workflow_engine.assign_workflow(db, "VAT", quarter.id, staff.id, manager)
        assert assignment.effective_assignee(db, vat_client, "vat") == staff.id

        workflow_engine.advance_stage(db, "VAT", quarter.id, "FILED_TO_HMRC", staff)
        assert assignment.effective_assignee(db, vat_client, "vat") == manager.id

    def test_assign_client_slot(self, db, make_client, staff, manager):
        client = make_client()
        assignment.assign_client(db, client, "vat", staff.id, manager)
        assert client.vat_assigned_user_id == staff.id
        assignment.assign_client(db, client, "vat", None, manager)
        assert client.vat_assigned_user_id is None
        actions = {e.action for e in db.query(ActivityLog).all()}
        assert {ActivityTypes.CLIENT_ASSIGNED, ActivityTypes.CLIENT_UNASSIGNED} <= actions

    def test_assign_unknown_user(self, db, make_client, manager):
        with pytest.raises(NotFound):
            assignment.assign_client(db, make_client(), "general", "not-a-user", manager)

    def test_counts_and_filter(self, db, make_client, staff, manager):
        vat = {"is_vat_enabled": True, "vat_quarter_group": "1"}
        a = make_client(assigned_user_id=staff.id, **vat)
        b = make_client(assigned_user_id=staff.id, vat_assigned_user_id=manager.id, **vat)
        c = make_client(**vat)
        clients = [a, b, c]

        counts = assignment.count_by_assignee(db, clients, "vat")
        assert counts == {str(staff.id): 1, str(manager.id): 1, None: 1}
        assert assignment.filter_clients_by_assignee(db, clients, "general", staff.id) == [a, b]
        assert assignment.filter_clients_by_assignee(db, clients, "vat", None) == [c]

        per_category = assignment.user_counts(db, clients)
        assert set(per_category) == set(assignment.CATEGORIES)
        assert per_category["general"] == {str(staff.id): 2, None: 1}
        assert per_category["accounts-ltd"] == {str(staff.id): 2, None: 1}
        assert per_category["accounts-non-ltd"] == {}

    def test_clients_outside_category_are_not_counted(self, db, make_client, staff):
        vat_ltd = make_client(assigned_user_id=staff.id, is_vat_enabled=True, vat_quarter_group="2")
        plain_ltd = make_client(assigned_user_id=staff.id)
        sole_trader = make_client(assigned_user_id=staff.id, company_type="NON_LIMITED_COMPANY")
        clients = [vat_ltd, plain_ltd, sole_trader]

        assert assignment.count_by_assignee(db, clients, "vat") == {str(staff.id): 1}
        assert assignment.count_by_assignee(db, clients, "accounts-ltd") == {str(staff.id): 2}
        assert assignment.count_by_assignee(db, clients, "accounts-non-ltd") == {str(staff.id): 1}
        assert assignment.count_by_assignee(db, clients, "general") == {str(staff.id): 3}
        assert assignment.filter_clients_by_assignee(db, clients, "vat", staff.id) == [vat_ltd]
        assert assignment.filter_clients_by_assignee(db, clients, "accounts-non-ltd", staff.id) == [sole_trader]

    def test_category_membership(self, make_client):
        director = make_client(company_type="DIRECTOR")
        assert assignment.client_in_category(director, "accounts-non-ltd")
        assert not assignment.client_in_category(director, "accounts-ltd")
        assert not assignment.client_in_category(director, "vat")
        assert assignment.client_in_category(director, "general")

    def test_assign_inactive_user(self, db, make_client, staff, manager):
        staff.is_active = False
        db.commit()
        client = make_client()
        with pytest.raises(NotFound):
            assignment.assign_client(db, client, "vat", staff.id, manager)
        db.refresh(client)
        assert client.vat_assigned_user_id is None

    def test_assignment_entry_names_assignee(self, db, make_client, staff, manager):
        client = make_client()
        assignment.assign_client(db, client, "general", staff.id, manager)
        entry = db.query(ActivityLog).filter(ActivityLog.action == ActivityTypes.CLIENT_ASSIGNED).one()
        assert entry.details["assigned_user_name"] == staff.name
