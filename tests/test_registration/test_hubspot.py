"""Tests for the HubSpot CRM adapter in django_ticketing.registration.hubspot."""

import json

import httpx
import pytest
from django.test import override_settings

from django_ticketing.registration.exceptions import CRMSyncError
from django_ticketing.registration.hubspot import HubspotClient, HubspotCompany, contact_properties, sync_contact
from django_ticketing.registration.models import Registration

HUBSPOT_SETTINGS = {"hubspot": {"access_token": "pat-test-token"}}


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def transport(requests_seen):
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        return httpx.Response(200, json={})

    return httpx.MockTransport(handler)


@pytest.fixture
def listed_registration(event, make_registration):
    event.hubspot_list_id = "42"
    event.save()
    return make_registration(company="Analytical Engines", phone="+44 20 0000")


# =============================================================================
# TestHubspotClient
# =============================================================================


@pytest.mark.unit
class TestHubspotClient:
    def test_requires_a_token(self):
        with pytest.raises(ValueError, match="access token"):
            HubspotClient()

    def test_add_contact_to_list(self, transport, requests_seen):
        with HubspotClient("pat-explicit", transport=transport) as client:
            client.add_contact_to_list("ada@example.com", "42", {"firstname": "Ada"})

        upsert, add = requests_seen
        assert upsert.url.host == "api.hubapi.com"
        assert upsert.url.path == "/contacts/v1/contact/createOrUpdate/email/ada@example.com/"
        assert upsert.headers["Authorization"] == "Bearer pat-explicit"
        assert json.loads(upsert.content) == {"properties": [{"property": "firstname", "value": "Ada"}]}
        assert add.url.path == "/contacts/v1/lists/42/add"
        assert json.loads(add.content) == {"emails": ["ada@example.com"]}

    def test_http_error_becomes_crm_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        with HubspotClient("pat-explicit", transport=transport) as client, pytest.raises(CRMSyncError, match="500"):
            client.upsert_contact("ada@example.com", {})

    def test_network_error_becomes_crm_error(self):
        def handler(request):
            msg = "connection refused"
            raise httpx.ConnectError(msg, request=request)

        with HubspotClient("pat-explicit", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(CRMSyncError, match="connection refused"):
                client.upsert_contact("ada@example.com", {})


# =============================================================================
# TestSyncContact
# =============================================================================


@pytest.mark.django_db
class TestSyncContact:
    def test_contact_properties(self, listed_registration):
        properties = contact_properties(listed_registration, Registration.Status.CONFIRMED)
        assert properties == {
            "email": "ada@example.com",
            "firstname": "Ada",
            "lastname": "Lovelace",
            "company": "Analytical Engines",
            "phone": "+44 20 0000",
            "registration_status": "confirmed",
            "event_name": "Summit",
        }

    @override_settings(DJANGO_TICKETING=HUBSPOT_SETTINGS)
    def test_synced(self, listed_registration, transport, requests_seen):
        assert sync_contact(listed_registration, Registration.Status.CONFIRMED, transport=transport) is True
        assert len(requests_seen) == 2

    @override_settings(DJANGO_TICKETING=HUBSPOT_SETTINGS)
    def test_skipped_without_list(self, make_registration, transport, requests_seen):
        assert sync_contact(make_registration(), Registration.Status.CONFIRMED, transport=transport) is False
        assert requests_seen == []

    def test_skipped_without_token(self, listed_registration, transport, requests_seen):
        assert sync_contact(listed_registration, Registration.Status.CONFIRMED, transport=transport) is False
        assert requests_seen == []

    @override_settings(DJANGO_TICKETING=HUBSPOT_SETTINGS)
    def test_failure_is_swallowed(self, listed_registration):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        assert sync_contact(listed_registration, Registration.Status.CONFIRMED, transport=transport) is False


# =============================================================================
# TestCompaniesInList
# =============================================================================


def company_list_transport(pages, names, requests_seen):
    """Serve list membership ``pages`` and a batch-read of ``names`` by id."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        if request.url.path == "/crm/v3/lists/77/memberships":
            return httpx.Response(200, json=pages[request.url.params.get("after", "")])
        if request.url.path == "/crm/v3/objects/companies/batch/read":
            ids = [item["id"] for item in json.loads(request.content)["inputs"]]
            results = [{"id": company_id, "properties": {"name": names.get(company_id)}} for company_id in ids]
            return httpx.Response(200, json={"status": "COMPLETE", "results": results})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.unit
class TestCompaniesInList:
    def test_follows_pages_and_reads_names(self, requests_seen):
        pages = {
            "": {"results": [{"recordId": "1001"}, {"recordId": "1002"}], "paging": {"next": {"after": "p2"}}},
            "p2": {"results": [{"recordId": "1003"}]},
        }
        names = {"1001": "Acme", "1002": "Globex", "1003": None}
        transport = company_list_transport(pages, names, requests_seen)

        with HubspotClient("pat-explicit", transport=transport) as client:
            companies = client.companies_in_list("77")

        assert companies == [
            HubspotCompany(id="1001", name="Acme"),
            HubspotCompany(id="1002", name="Globex"),
            HubspotCompany(id="1003", name="Unknown"),
        ]
        first_page, second_page, batch = requests_seen
        assert first_page.method == "GET"
        assert first_page.url.params["limit"] == "100"
        assert second_page.url.params["after"] == "p2"
        assert batch.method == "POST"
        assert json.loads(batch.content)["properties"] == ["name"]

    def test_empty_list(self, requests_seen):
        transport = company_list_transport({"": {"results": []}}, {}, requests_seen)

        with HubspotClient("pat-explicit", transport=transport) as client:
            assert client.companies_in_list("77") == []

        assert len(requests_seen) == 1

    def test_missing_list_becomes_crm_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        with HubspotClient("pat-explicit", transport=transport) as client, pytest.raises(CRMSyncError, match="404"):
            client.companies_in_list("missing")
