"""HubSpot CRM adapter.

Adds registrants to the event's HubSpot contact list and reads partner
companies from company lists for coupon generation. Contact updates are best
effort: :func:`sync_contact` logs failures and never raises, so a CRM outage
cannot undo a registration that already went through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from django_ticketing.registration.exceptions import CRMSyncError
from django_ticketing.settings import get_config

if TYPE_CHECKING:
    from django_ticketing.registration.models import Registration

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100


@dataclass(frozen=True)
class HubspotCompany:
    """A company record from a HubSpot list."""

    id: str
    name: str


class HubspotClient:
    """Thin client for the HubSpot contacts and companies APIs.

    Args:
        access_token: Private app token. Defaults to
            ``DJANGO_TICKETING['hubspot']['access_token']``.
        transport: Optional ``httpx`` transport, used by tests.

    Raises:
        ValueError: If no access token is configured.
    """

    def __init__(self, access_token: str | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        config = get_config().hubspot
        token = access_token or config.access_token
        if not token:
            msg = "HubSpot access token is not configured. Set DJANGO_TICKETING['hubspot']['access_token']."
            raise ValueError(msg)
        self.client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> HubspotClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def upsert_contact(self, email: str, properties: dict[str, str]) -> None:
        """Create the contact or update its properties."""
        payload = {"properties": [{"property": key, "value": value} for key, value in properties.items()]}
        self._post(f"/contacts/v1/contact/createOrUpdate/email/{email}/", payload)

    def add_contact_to_list(self, email: str, list_id: str, properties: dict[str, str] | None = None) -> None:
        """Upsert a contact and add it to a static contact list.

        Raises:
            CRMSyncError: If either HubSpot call fails.
        """
        self.upsert_contact(email, properties or {})
        self._post(f"/contacts/v1/lists/{list_id}/add", {"emails": [email]})

    def companies_in_list(self, list_id: str) -> list[HubspotCompany]:
        """Return every company in a HubSpot company list.

        Walks the list's memberships page by page, then reads the company
        names in batches.

        Raises:
            CRMSyncError: If any HubSpot call fails.
        """
        company_ids: list[str] = []
        after = ""
        while True:
            params: dict[str, object] = {"limit": _PAGE_SIZE}
            if after:
                params["after"] = after
            page = self._request("GET", f"/crm/v3/lists/{list_id}/memberships", params=params)
            company_ids.extend(str(member["recordId"]) for member in page.get("results", []) if member.get("recordId"))
            after = str(((page.get("paging") or {}).get("next") or {}).get("after") or "")
            if not after:
                break

        companies: list[HubspotCompany] = []
        for start in range(0, len(company_ids), _PAGE_SIZE):
            batch = company_ids[start : start + _PAGE_SIZE]
            payload = {"properties": ["name"], "inputs": [{"id": company_id} for company_id in batch]}
            data = self._request("POST", "/crm/v3/objects/companies/batch/read", json=payload)
            for record in data.get("results", []):
                if not record.get("id"):
                    continue
                name = str((record.get("properties") or {}).get("name") or "").strip()
                companies.append(HubspotCompany(id=str(record["id"]), name=name or "Unknown"))
        logger.info("Fetched %d companies from HubSpot list %s", len(companies), list_id)
        return companies

    def _post(self, path: str, payload: dict[str, object]) -> None:
        self._request("POST", path, json=payload)

    def _request(self, method: str, path: str, **kwargs: object) -> dict[str, object]:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"HubSpot returned HTTP {exc.response.status_code} for {path}"
            raise CRMSyncError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"HubSpot request to {path} failed: {exc}"
            raise CRMSyncError(msg) from exc
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"HubSpot returned invalid JSON for {path}"
            raise CRMSyncError(msg) from exc
        return data if isinstance(data, dict) else {}


def contact_properties(registration: Registration, status: str) -> dict[str, str]:
    """Map a registration onto HubSpot contact properties."""
    return {
        "email": registration.email,
        "firstname": registration.name,
        "lastname": registration.surname,
        "company": registration.company,
        "phone": registration.phone,
        "registration_status": status,
        "event_name": registration.event.name,
    }


def sync_contact(
    registration: Registration,
    status: str,
    *,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """Push ``registration`` to its event's HubSpot list, swallowing failures.

    Returns:
        ``True`` if the contact was synced, ``False`` if syncing was skipped
        or failed.
    """
    list_id = registration.event.hubspot_list_id
    if not list_id or not get_config().hubspot.access_token:
        return False
    try:
        with HubspotClient(transport=transport) as client:
            client.add_contact_to_list(registration.email, list_id, contact_properties(registration, status))
    except CRMSyncError as exc:
        logger.warning("HubSpot sync failed for registration %s (%s): %s", registration.pk, status, exc)
        return False
    logger.info("Synced registration %s to HubSpot list %s (%s)", registration.pk, list_id, status)
    return True
