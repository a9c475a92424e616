"""Bulk coordinator: per-item isolation, cardinality and the aggregate activity entry."""

import uuid
from datetime import date

import pytest

from numericalz.errors import ValidationError
from numericalz.models.models import (
    ActivityLog, Client, Communication, VATQuarter, VATWorkflowHistory,
)
from numericalz.services import bulk, workflow_engine
from numericalz.services.activity import ActivityTypes
from numericalz.services.bulk import BulkOperation


def assert_partitioned(result, target_ids):
    ok = [item["id"] for item in result.successful]
    bad = [item["id"] for item in result.failed]
    assert sorted(ok + bad) == sorted(str(t) for t in target_ids)
    assert not set(ok) & set(bad)


class TestValidateTargets:
    def test_empty_batch(self):
        with pytest.raises(ValidationError):
            bulk.validate_targets([])

    def test_oversized_batch(self):
        with pytest.raises(ValidationError) as exc:
            bulk.validate_targets([str(i) for i in range(101)])
        assert exc.value.detail["max_items"] == 100

    def test_duplicates_collapse(self):
        assert bulk.validate_targets(["a", "b", "a"]) == ["a", "b"]

    def test_oversized_batch_touches_nothing(self, db, make_client, manager):
        clients = [make_client() for _ in range(3)]
        with pytest.raises(ValidationError):
            bulk.run_bulk(db, [str(c.id) for c in clients] + [str(uuid.uuid4()) for _ in range(98)],
                          BulkOperation.DELETE_CLIENTS, manager)
        assert db.query(Client).count() == 3

    def test_duplicates_are_reported(self, db, make_client, manager):
        client = make_client(is_vat_enabled=True, vat_quarter_group="1")
        result = bulk.run_bulk(db, [str(client.id), str(client.id), str(client.id)],
                               BulkOperation.CREATE_VAT_QUARTERS, manager, reference_date=date(2025, 3, 1))
        summary = result.to_dict()["summary"]
        assert summary["total"] == 1
        assert summary["succeeded"] == 1
        assert summary["duplicates"] == 2
        assert db.query(VATQuarter).count() == 1

    def test_unknown_operation(self, db, manager):
        with pytest.raises(ValidationError):
            bulk.run_bulk(db, ["x"], "explode", manager)


class TestCreateVATQuarters:
    def test_one_bad_target_does_not_block_others(self, db, make_client, manager):
        good = [make_client(is_vat_enabled=True, vat_quarter_group="1") for _ in range(3)]
        not_vat = make_client(is_vat_enabled=False)
        targets = [str(c.id) for c in good] + [str(not_vat.id)]

        result = bulk.run_bulk(db, targets, BulkOperation.CREATE_VAT_QUARTERS, manager, reference_date=date(2025, 3, 1))

        assert len(result.successful) == 3
        assert len(result.failed) == 1
        assert result.failed[0]["id"] == str(not_vat.id)
        assert result.failed[0]["error"] == "Client is not VAT enabled"
        assert_partitioned(result, targets)
        assert db.query(VATQuarter).count() == 3

    def test_single_aggregate_activity_entry(self, db, make_client, manager):
        clients = [make_client(is_vat_enabled=True, vat_quarter_group="2") for _ in range(2)]
        bulk.run_bulk(db, [str(c.id) for c in clients], BulkOperation.CREATE_VAT_QUARTERS, manager, reference_date="2025-03-01")
        entries = db.query(ActivityLog).all()
        assert [e.action for e in entries] == [ActivityTypes.BULK_VAT_QUARTERS_CREATED]
        assert entries[0].details["succeeded"] == 2
        assert entries[0].user_id == manager.id

    def test_no_entry_when_nothing_succeeded(self, db, manager):
        result = bulk.run_bulk(db, [str(uuid.uuid4())], BulkOperation.CREATE_VAT_QUARTERS, manager)
        assert result.failed[0]["error"] == "Client not found"
        assert db.query(ActivityLog).count() == 0

    def test_bad_reference_date(self, db, manager):
        with pytest.raises(ValidationError):
            bulk.run_bulk(db, ["x"], BulkOperation.CREATE_VAT_QUARTERS, manager, reference_date="31/03/2025")

    def test_summary(self, db, make_client, manager):
        client = make_client(is_vat_enabled=True, vat_quarter_group="1")
        result = bulk.run_bulk(db, [str(client.id), "nope"], BulkOperation.CREATE_VAT_QUARTERS, manager)
        assert result.to_dict()["summary"] == {"total": 2, "succeeded": 1, "failed": 1, "duplicates": 0}


class TestUpdateStage:
    def test_invalid_stage_is_per_item(self, db, make_client, manager):
        client = make_client(is_vat_enabled=True, vat_quarter_group="1")
        quarter = workflow_engine.create_vat_quarter(db, client, reference_date=date(2025, 3, 1))
        result = bulk.run_bulk(db, [str(quarter.id)], BulkOperation.UPDATE_STAGE, manager,
                               workflow_type="VAT", stage="NOT_A_STAGE")
        assert len(result.failed) == 1
        assert "Invalid stage" in result.failed[0]["error"]

    def test_moves_each_workflow(self, db, make_client, manager):
        quarters = [
            workflow_engine.create_vat_quarter(db, make_client(is_vat_enabled=True, vat_quarter_group="1"),
                                               reference_date=date(2025, 3, 1))
            for _ in range(2)
        ]
        ids = [str(q.id) for q in quarters] + [str(uuid.uuid4())]
        result = bulk.run_bulk(db, ids, BulkOperation.UPDATE_STAGE, manager, workflow_type="VAT", stage="WORK_IN_PROGRESS")
        assert len(result.successful) == 2
        assert len(result.failed) == 1
        for q in quarters:
            db.refresh(q)
            assert q.current_stage == "WORK_IN_PROGRESS"
            assert q.work_started_by_user_name == manager.name
        stage_entries = db.query(ActivityLog).filter(ActivityLog.action == ActivityTypes.VAT_WORKFLOW_STAGE_CHANGED).count()
        assert stage_entries == 0


class TestAssign:
    def test_category_assignment(self, db, make_client, manager, staff):
        clients = [make_client() for _ in range(2)]
        result = bulk.run_bulk(db, [str(c.id) for c in clients], BulkOperation.ASSIGN, manager,
                               category="vat", user_id=staff.id)
        assert len(result.successful) == 2
        for c in clients:
            db.refresh(c)
            assert c.vat_assigned_user_id == staff.id

    def test_unknown_assignee_fails_every_item(self, db, make_client, manager):
        clients = [make_client() for _ in range(2)]
        result = bulk.run_bulk(db, [str(c.id) for c in clients], BulkOperation.ASSIGN, manager,
                               category="general", user_id=uuid.uuid4())
        assert len(result.failed) == 2
        assert result.successful == []


class TestDeleteClients:
    def test_cascade(self, db, make_client, manager):
        client = make_client(is_vat_enabled=True, vat_quarter_group="1")
        keep = make_client()
        workflow_engine.create_vat_quarter(db, client, reference_date=date(2025, 3, 1))
        db.add(Communication(client_id=client.id, type="EMAIL", subject="Chaser", content="Please send records"))
        db.commit()

        code = client.client_code
        result = bulk.run_bulk(db, [str(client.id), str(uuid.uuid4())], BulkOperation.DELETE_CLIENTS, manager)

        assert len(result.successful) == 1
        assert len(result.failed) == 1
        assert result.successful[0]["client_code"] == code
        assert db.query(Client).all() == [keep]
        assert db.query(VATQuarter).count() == 0
        assert db.query(VATWorkflowHistory).count() == 0
        assert db.query(Communication).count() == 0
        entries = db.query(ActivityLog).all()
        assert [e.action for e in entries] == [ActivityTypes.BULK_CLIENT_DELETE]
        assert entries[0].client_id is None


class TestRefresh:
    def test_mixed_results(self, db, make_client, manager, registry_for, payload_for):
        ok = make_client(company_number="12345678")
        missing = make_client(company_number="87654321")
        registry = registry_for({"12345678": payload_for("12345678")})
        result = bulk.run_bulk(db, [str(ok.id), str(missing.id)], BulkOperation.REFRESH_COMPANIES_HOUSE, manager,
                               registry=registry)
        assert [i["id"] for i in result.successful] == [str(ok.id)]
        assert result.failed == [{"id": str(missing.id), "error": "Company not found"}]

    def test_malformed_registry_body_is_per_item(self, db, make_client, manager, registry_for, payload_for):
        ok = make_client(company_number="12345678")
        garbled = make_client(company_number="87654321")
        registry = registry_for({"12345678": payload_for("12345678"), "87654321": "<html>Service unavailable</html>"})

        result = bulk.run_bulk(db, [str(ok.id), str(garbled.id)], BulkOperation.REFRESH_COMPANIES_HOUSE, manager,
                               registry=registry)

        assert [i["id"] for i in result.successful] == [str(ok.id)]
        assert result.failed == [{"id": str(garbled.id), "error": "Invalid response from Companies House API"}]
        entries = db.query(ActivityLog).all()
        assert [e.action for e in entries] == [ActivityTypes.BULK_COMPANIES_HOUSE_REFRESH]
        assert entries[0].details["succeeded"] == 1
        assert entries[0].details["failed"] == 1

    def test_unexpected_error_is_per_item(self, db, make_client, manager, registry_for, payload_for, monkeypatch):
        ok = make_client(company_number="12345678")
        broken = make_client(company_number="87654321")
        registry = registry_for({"12345678": payload_for("12345678"), "87654321": payload_for("87654321")})
        real_refresh = bulk.refresh_client

        def flaky_refresh(db, client, registry, **kwargs):
            if client.id == broken.id:
                raise RuntimeError("boom")
            return real_refresh(db, client, registry, **kwargs)

        monkeypatch.setattr(bulk, "refresh_client", flaky_refresh)
        result = bulk.run_bulk(db, [str(ok.id), str(broken.id)], BulkOperation.REFRESH_COMPANIES_HOUSE, manager,
                               registry=registry)

        assert [i["id"] for i in result.successful] == [str(ok.id)]
        assert result.failed == [{"id": str(broken.id), "error": "Unexpected error"}]
        assert db.query(ActivityLog).filter(ActivityLog.action == ActivityTypes.BULK_COMPANIES_HOUSE_REFRESH).count() == 1


class TestAutoCreateVATQuarters:
    def test_opens_next_quarter_with_previous_assignee(self, db, vat_client, manager, staff):
        first = workflow_engine.create_vat_quarter(db, vat_client, reference_date=date(2025, 2, 15), assigned_user_id=staff.id)
        assert first.quarter_end_date == date(2025, 3, 31)

        result = bulk.auto_create_vat_quarters(db, today=date(2025, 7, 1), actor=manager)

        assert [i["id"] for i in result.successful] == [str(vat_client.id)]
        assert result.successful[0]["assigned_user_id"] == str(staff.id)
        latest = (
            db.query(VATQuarter)
            .filter(VATQuarter.client_id == vat_client.id)
            .order_by(VATQuarter.quarter_end_date.desc())
            .first()
        )
        assert latest.quarter_end_date == date(2025, 6, 30)
        assert latest.assigned_user_id == staff.id
        entries = db.query(ActivityLog).filter(ActivityLog.action == ActivityTypes.VAT_QUARTERS_AUTO_CREATED).all()
        assert len(entries) == 1

    def test_quarter_not_yet_ended_is_skipped(self, db, vat_client):
        workflow_engine.create_vat_quarter(db, vat_client, reference_date=date(2025, 2, 15))
        result = bulk.auto_create_vat_quarters(db, today=date(2025, 6, 30))
        assert result.successful == []
        assert result.failed == []
        assert db.query(VATQuarter).count() == 1

    def test_client_without_quarters_gets_the_one_just_ended(self, db, vat_client):
        result = bulk.auto_create_vat_quarters(db, today=date(2025, 7, 10))
        assert len(result.successful) == 1
        quarter = db.query(VATQuarter).one()
        assert quarter.quarter_end_date == date(2025, 6, 30)
        assert quarter.assigned_user_id is None

    def test_inactive_and_non_vat_clients_ignored(self, db, make_client):
        make_client(is_vat_enabled=True, vat_quarter_group="1", is_active=False)
        make_client(is_vat_enabled=False)
        assert bulk.clients_due_vat_quarter(db, date(2025, 7, 10)) == []
        assert bulk.auto_create_vat_quarters(db, today=date(2025, 7, 10)).successful == []

    def test_deactivated_assignee_not_carried_over(self, db, vat_client, staff):
        workflow_engine.create_vat_quarter(db, vat_client, reference_date=date(2025, 2, 15), assigned_user_id=staff.id)
        staff.is_active = False
        db.commit()
        result = bulk.auto_create_vat_quarters(db, today=date(2025, 7, 1))
        assert result.successful[0]["assigned_user_id"] is None
