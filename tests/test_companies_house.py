"""Companies House client and the refresh path into the deadline calculator."""

from datetime import date

import httpx
import pytest

from numericalz.config import settings
from numericalz.errors import CompaniesHouseError, NotFound, ValidationError
from numericalz.models.models import ActivityLog
from numericalz.services import companies_house
from numericalz.services.activity import ActivityTypes
from numericalz.services.companies_house import CompaniesHouseClient, CompanyProfile


class TestCompanyNumbers:
    @pytest.mark.parametrize("raw", ["12345678", "SC123456", " sc 123456 ", "01234567"])
    def test_valid(self, raw):
        assert companies_house.is_valid_company_number(raw)

    @pytest.mark.parametrize("raw", ["", "ABC123456", "12345", "1234567890", None])
    def test_invalid(self, raw):
        assert not companies_house.is_valid_company_number(raw)

    def test_clean(self):
        assert companies_house.clean_company_number(" sc 123456 ") == "SC123456"

    @pytest.mark.parametrize("ch_type,expected", [
        ("ltd", "LIMITED_COMPANY"),
        ("plc", "LIMITED_COMPANY"),
        ("llp", "NON_LIMITED_COMPANY"),
        (None, "NON_LIMITED_COMPANY"),
    ])
    def test_company_type_mapping(self, ch_type, expected):
        assert companies_house.map_company_type(ch_type) == expected


class TestProfileParsing:
    def test_from_api(self, payload_for):
        profile = CompanyProfile.from_api(payload_for("12345678"))
        assert profile.incorporation_date == date(2023, 3, 15)
        assert profile.accounting_reference_date == (31, 12)
        assert profile.last_accounts_made_up_to == date(2023, 12, 31)
        assert profile.next_made_up_to == date(2024, 12, 31)
        assert profile.next_accounts_due == date(2025, 9, 30)
        assert profile.next_confirmation_due == date(2025, 3, 29)

    def test_missing_sections(self):
        profile = CompanyProfile.from_api({"company_number": "12345678", "date_of_creation": "bad"})
        assert profile.incorporation_date is None
        assert profile.accounting_reference_date is None
        assert profile.next_accounts_due is None


class TestClient:
    def test_fetch(self, registry_for, payload_for):
        profile = registry_for({"12345678": payload_for("12345678")}).fetch("12345678")
        assert profile.company_name == "COMPANY 12345678 LIMITED"

    def test_sends_api_key_as_basic_auth(self, payload_for):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["path"] = request.url.path
            return httpx.Response(200, json=payload_for("SC123456"))

        registry = CompaniesHouseClient(api_key="secret", base_url="https://ch.test", transport=httpx.MockTransport(handler))
        registry.fetch("sc123456")
        assert seen["auth"].startswith("Basic ")
        assert seen["path"] == "/company/SC123456"

    def test_not_found(self, registry_for):
        with pytest.raises(NotFound):
            registry_for({}).fetch("12345678")

    @pytest.mark.parametrize("status,expected", [(429, 429), (401, 502), (500, 502)])
    def test_upstream_errors(self, registry_for, status, expected):
        with pytest.raises(CompaniesHouseError) as exc:
            registry_for({"12345678": status}).fetch("12345678")
        assert exc.value.status_code == expected

    def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        registry = CompaniesHouseClient(api_key="k", base_url="https://ch.test", transport=httpx.MockTransport(handler))
        with pytest.raises(CompaniesHouseError):
            registry.fetch("12345678")

    def test_non_json_body(self, registry_for):
        with pytest.raises(CompaniesHouseError) as exc:
            registry_for({"12345678": "<html>Bad gateway</html>"}).fetch("12345678")
        assert exc.value.status_code == 502
        assert exc.value.message == "Invalid response from Companies House API"

    def test_invalid_number_never_hits_network(self, registry_for):
        with pytest.raises(ValidationError):
            registry_for({}).fetch("not a number")

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr(settings, "companies_house_api_key", None)
        with pytest.raises(CompaniesHouseError) as exc:
            CompaniesHouseClient()
        assert exc.value.status_code == 503


class TestRefresh:
    def test_refresh_updates_client_and_deadlines(self, db, make_client, registry_for, payload_for, staff):
        client = make_client(company_number="12345678")
        registry = registry_for({"12345678": payload_for("12345678")})

        companies_house.refresh_client(db, client, registry, acting_user=staff)

        assert client.accounting_reference_day == 31
        assert client.accounting_reference_month == 12
        assert client.next_accounts_due == date(2025, 9, 30)
        assert client.next_year_end == date(2024, 12, 31)
        assert client.next_corporation_tax_due == date(2025, 12, 31)
        assert client.companies_house_refreshed_at is not None
        entry = db.query(ActivityLog).filter(ActivityLog.action == ActivityTypes.CLIENT_COMPANIES_HOUSE_REFRESHED).one()
        assert entry.client_id == client.id

    def test_ct_due_from_calculator_without_next_year_end(self, db, make_client, registry_for, payload_for):
        client = make_client(company_number="12345678")
        payload = payload_for("12345678")
        del payload["accounts"]["next_made_up_to"]
        companies_house.refresh_client(db, client, registry_for({"12345678": payload}))
        # last accounts 2023-12-31 -> year end 2024-12-31 -> CT due 12 months later
        assert client.next_corporation_tax_due == date(2025, 12, 31)

    def test_identity_kept_unless_requested(self, make_client, payload_for):
        client = make_client(company_name="Our Name Ltd")
        profile = CompanyProfile.from_api(payload_for("12345678", type="llp"))
        companies_house.apply_company_profile(client, profile)
        assert client.company_name == "Our Name Ltd"
        companies_house.apply_company_profile(client, profile, update_identity=True)
        assert client.company_name == "COMPANY 12345678 LIMITED"
        assert client.company_type == "NON_LIMITED_COMPANY"

    def test_client_without_number(self, db, make_client, registry_for):
        client = make_client(company_number=None)
        with pytest.raises(ValidationError):
            companies_house.refresh_client(db, client, registry_for({}))
