import asyncio
import base64
from datetime import datetime
from typing import Callable

import httpx

from connectors.errors import Err, ErrorKind, Ok
from connectors.folk import FolkConnector
from connectors.gmail import GmailConnector, decode_cursor, parse_message
from connectors.hubspot import HubSpotConnector
from connectors.models import Credential, Provider
from connectors.pipedrive import PipedriveConnector
from connectors.registry import data_providers, get_connector_class
from connectors.salesforce import SalesforceConnector
from connectors.zoho import ZohoConnector
from services.normalizer import normalize

Handler = Callable[[httpx.Request], httpx.Response]


def _credential(provider: Provider, **overrides) -> Credential:
    fields = {"account_id": "acct-1", "provider": provider, "access_token": "tok-123"}
    fields.update(overrides)
    return Credential(**fields)


def _run_page(connector_cls, handler: Handler, credential: Credential, cursor=None, since=None):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            connector = connector_cls(client=client)
            return await connector.fetch_page(credential, cursor, since)

    return asyncio.run(_run())


def test_registry_discovers_all_data_adapters() -> None:
    assert data_providers() == ["folk", "gmail", "hubspot", "pipedrive", "salesforce", "zoho"]
    assert get_connector_class("hubspot") is HubSpotConnector


# ---------------------------------------------------------------------------
# HubSpot
# ---------------------------------------------------------------------------


def test_hubspot_page_joins_batch_read_contacts() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/crm/v3/objects/deals":
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "id": "101",
                            "properties": {"dealname": "Acme", "amount": "100", "dealstage": "closedwon"},
                            "associations": {"contacts": {"results": [{"id": "1"}, {"id": "2"}]}},
                        },
                        {"properties": {"dealname": "No id"}},
                    ],
                    "paging": {"next": {"after": "cursor-2"}},
                },
            )
        if request.url.path == "/crm/v3/objects/contacts/batch/read":
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": "1", "properties": {"email": "ann@acme.com", "firstname": "Ann"}},
                        {"id": "2", "properties": {"email": "bo@acme.com"}},
                    ]
                },
            )
        return httpx.Response(404)

    result = _run_page(HubSpotConnector, handler, _credential(Provider.HUBSPOT), cursor="cursor-1")

    assert isinstance(result, Ok)
    page = result.value
    assert page.next_cursor == "cursor-2"
    assert page.skipped == 1
    assert [d.id for d in page.items] == ["101"]
    assert [c.email for c in page.items[0].contacts] == ["ann@acme.com", "bo@acme.com"]
    assert requests[0].url.params["after"] == "cursor-1"
    assert requests[0].headers["Authorization"] == "Bearer tok-123"


def test_hubspot_contact_failure_degrades_to_no_contacts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/crm/v3/objects/deals":
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "id": "101",
                            "properties": {"dealname": "Acme"},
                            "associations": {"contacts": {"results": [{"id": "1"}]}},
                        }
                    ]
                },
            )
        return httpx.Response(500, json={"message": "boom"})

    result = _run_page(HubSpotConnector, handler, _credential(Provider.HUBSPOT))

    assert isinstance(result, Ok)
    assert result.value.next_cursor is None
    assert result.value.items[0].contacts == []


def test_error_statuses_are_classified() -> None:
    def unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "expired"})

    def rate_limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "7"}, json={"message": "slow down"})

    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    def forbidden(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "missing scope"})

    credential = _credential(Provider.HUBSPOT)

    auth = _run_page(HubSpotConnector, unauthorized, credential)
    limited = _run_page(HubSpotConnector, rate_limited, credential)
    down = _run_page(HubSpotConnector, unavailable, credential)
    denied = _run_page(HubSpotConnector, forbidden, credential)

    assert isinstance(auth, Err) and auth.kind is ErrorKind.AUTH_EXPIRED
    assert isinstance(limited, Err) and limited.kind is ErrorKind.RATE_LIMITED
    assert limited.error.retry_after == 7.0
    assert isinstance(down, Err) and down.kind is ErrorKind.TRANSIENT_NETWORK
    assert isinstance(denied, Err) and denied.kind is ErrorKind.FATAL
    assert "missing scope" in denied.error.message


def test_transport_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    result = _run_page(PipedriveConnector, handler, _credential(Provider.PIPEDRIVE))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.TRANSIENT_NETWORK
    assert result.error.provider == "pipedrive"


# ---------------------------------------------------------------------------
# Pipedrive
# ---------------------------------------------------------------------------


def test_pipedrive_missing_person_leaves_deal_without_contacts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/deals":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": 1, "title": "Has person", "person_id": {"value": 5, "name": "Bob"}},
                        {"id": 2, "title": "Deleted person", "person_id": 6},
                        {"id": 3, "title": "No person", "person_id": None},
                    ],
                    "additional_data": {
                        "pagination": {"more_items_in_collection": True, "next_start": 500}
                    },
                },
            )
        if request.url.path == "/api/v1/persons/5":
            return httpx.Response(
                200,
                json={"data": {"id": 5, "name": "Bob", "email": [{"value": "bob@x.com", "primary": True}]}},
            )
        if request.url.path == "/api/v1/persons/6":
            return httpx.Response(404, json={"error": "Person not found"})
        return httpx.Response(500)

    credential = _credential(Provider.PIPEDRIVE, api_domain="https://acme.pipedrive.com")
    result = _run_page(PipedriveConnector, handler, credential)

    assert isinstance(result, Ok)
    page = result.value
    assert page.next_cursor == "500"
    deals = [normalize(Provider.PIPEDRIVE, raw) for raw in page.items]
    assert [len(d.contacts) for d in deals] == [1, 0, 0]
    assert deals[0].contacts[0].email == "bob@x.com"


def test_pipedrive_cursor_is_start_offset() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["start"])
        return httpx.Response(200, json={"data": [], "additional_data": {"pagination": {}}})

    result = _run_page(PipedriveConnector, handler, _credential(Provider.PIPEDRIVE), cursor="500")

    assert isinstance(result, Ok)
    assert result.value.next_cursor is None
    assert seen == ["500"]


# ---------------------------------------------------------------------------
# Salesforce
# ---------------------------------------------------------------------------


def test_salesforce_without_instance_url_needs_reconnect() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _run_page(SalesforceConnector, handler, _credential(Provider.SALESFORCE))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NEEDS_RECONNECT


def test_salesforce_joins_contact_roles() -> None:
    opp_id = "006000000000001AAA"
    contact_id = "003000000000001AAA"

    def handler(request: httpx.Request) -> httpx.Response:
        query = request.url.params.get("q", "")
        if "FROM OpportunityContactRole" in query:
            assert opp_id in query
            return httpx.Response(
                200,
                json={
                    "records": [
                        {"OpportunityId": opp_id, "ContactId": contact_id, "Role": "Decision Maker", "IsPrimary": True}
                    ]
                },
            )
        if "FROM Contact " in query:
            return httpx.Response(
                200,
                json={
                    "records": [
                        {"Id": contact_id, "FirstName": "Bill", "LastName": "Lumbergh", "Account": {"Name": "Initech"}}
                    ]
                },
            )
        if "FROM Opportunity " in query:
            return httpx.Response(
                200,
                json={
                    "done": False,
                    "nextRecordsUrl": "/services/data/v59.0/query/01g-2000",
                    "records": [
                        {"Id": opp_id, "Name": "Initech", "StageName": "Prospecting", "Account": {"Name": "Initech"}}
                    ],
                },
            )
        return httpx.Response(400)

    credential = _credential(Provider.SALESFORCE, api_domain="https://initech.my.salesforce.com")
    result = _run_page(SalesforceConnector, handler, credential)

    assert isinstance(result, Ok)
    page = result.value
    assert page.next_cursor == "/services/data/v59.0/query/01g-2000"
    opportunity = page.items[0]
    assert opportunity.account_name == "Initech"
    assert [(c.first_name, c.role, c.is_primary) for c in opportunity.contacts] == [
        ("Bill", "Decision Maker", True)
    ]


def test_salesforce_follows_next_records_url() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"done": True, "records": []})

    credential = _credential(Provider.SALESFORCE, api_domain="https://initech.my.salesforce.com")
    result = _run_page(
        SalesforceConnector, handler, credential, cursor="/services/data/v59.0/query/01g-2000"
    )

    assert isinstance(result, Ok)
    assert result.value.next_cursor is None
    assert paths == ["/services/data/v59.0/query/01g-2000"]


# ---------------------------------------------------------------------------
# Zoho
# ---------------------------------------------------------------------------


def test_zoho_reads_contacts_collection_once_per_connector() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        assert request.headers["Authorization"] == "Zoho-oauthtoken tok-123"
        if request.url.path == "/crm/v2/Deals":
            page = int(request.url.params["page"])
            return httpx.Response(
                200,
                json={
                    "data": [{"id": f"d{page}", "Deal_Name": "Deal", "Contact_Name": {"id": "c1", "name": "Pat"}}],
                    "info": {"more_records": page == 1},
                },
            )
        if request.url.path == "/crm/v2/Contacts":
            return httpx.Response(
                200,
                json={"data": [{"id": "c1", "Full_Name": "Pat Doe", "Email": "pat@z.com"}], "info": {"more_records": False}},
            )
        return httpx.Response(404)

    credential = _credential(Provider.ZOHO, api_domain="https://www.zohoapis.eu")

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            connector = ZohoConnector(client=client)
            first = await connector.fetch_page(credential)
            second = await connector.fetch_page(credential, first.value.next_cursor)
            return first, second

    first, second = asyncio.run(_run())

    assert first.value.next_cursor == "2"
    assert second.value.next_cursor is None
    assert first.value.items[0].contact.email == "pat@z.com"
    assert second.value.items[0].contact.full_name == "Pat Doe"
    assert calls.count("/crm/v2/Contacts") == 1


def test_zoho_contacts_failure_is_partial() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/crm/v2/Deals":
            return httpx.Response(
                200, json={"data": [{"id": "d1", "Contact_Name": {"id": "c1", "name": "Pat"}}], "info": {}}
            )
        return httpx.Response(500)

    result = _run_page(ZohoConnector, handler, _credential(Provider.ZOHO))

    assert isinstance(result, Ok)
    raw = result.value.items[0]
    assert raw.contact is None
    assert [c.name for c in normalize(Provider.ZOHO, raw).contacts] == ["Pat"]


# ---------------------------------------------------------------------------
# Folk
# ---------------------------------------------------------------------------


def test_folk_page_extracts_cursor_from_next_link() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/people"
        return httpx.Response(
            200,
            json={
                "data": {
                    "items": [{"id": "per_1", "fullName": "Jane Roe"}, {"fullName": "No id"}],
                    "pagination": {"nextLink": "https://api.folk.app/v1/people?limit=100&cursor=abc123"},
                }
            },
        )

    result = _run_page(FolkConnector, handler, _credential(Provider.FOLK))

    assert isinstance(result, Ok)
    assert result.value.next_cursor == "abc123"
    assert result.value.skipped == 1
    assert [p.full_name for p in result.value.items] == ["Jane Roe"]


def test_folk_verify_returns_user() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/users/me"
        return httpx.Response(200, json={"data": {"email": "jane@roe.io", "fullName": "Jane Roe"}})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await FolkConnector(client=client).verify(_credential(Provider.FOLK))

    result = asyncio.run(_run())

    assert isinstance(result, Ok)
    assert result.value["email"] == "jane@roe.io"


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------


def _encoded(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_parse_message_reads_headers_and_plain_text_part() -> None:
    message = {
        "id": "m1",
        "threadId": "t1",
        "snippet": "Hello",
        "labelIds": ["INBOX"],
        "internalDate": "1704067200000",
        "payload": {
            "headers": [
                {"name": "From", "value": '"Ann Lee" <Ann@Acme.com>'},
                {"name": "To", "value": "me@us.com, Other <other@us.com>"},
                {"name": "Subject", "value": "Pricing"},
            ],
            "parts": [
                {"mimeType": "text/html", "body": {"data": _encoded("<p>Hi</p>")}},
                {"mimeType": "text/plain", "body": {"data": _encoded("Hi there")}},
            ],
        },
    }

    parsed = parse_message(message)

    assert parsed["from_email"] == "ann@acme.com"
    assert parsed["from_name"] == "Ann Lee"
    assert parsed["to_emails"] == ["me@us.com", "other@us.com"]
    assert parsed["body_text"] == "Hi there"
    assert parsed["received_at"] == datetime(2024, 1, 1)
    assert parsed["labels"] == ["INBOX"]


def test_gmail_page_windows_by_since_and_skips_failed_details() -> None:
    list_params: list[httpx.QueryParams] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/gmail/v1/users/me/messages":
            list_params.append(request.url.params)
            return httpx.Response(
                200,
                json={"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "tok-2"},
            )
        if request.url.path == "/gmail/v1/users/me/messages/m1":
            return httpx.Response(
                200,
                json={
                    "id": "m1",
                    "threadId": "t1",
                    "payload": {"headers": [{"name": "From", "value": "a@b.com"}], "body": {"data": _encoded("x")}},
                },
            )
        return httpx.Response(500)

    result = _run_page(
        GmailConnector, handler, _credential(Provider.GMAIL), since=datetime(2024, 1, 1)
    )

    assert isinstance(result, Ok)
    page = result.value
    assert [m.id for m in page.items] == ["m1"]
    assert list_params[0]["q"] == "after:1704067200"
    assert decode_cursor(page.next_cursor) == (1704067200, "tok-2")


def test_gmail_resumed_cursor_keeps_original_window() -> None:
    list_params: list[httpx.QueryParams] = []

    def handler(request: httpx.Request) -> httpx.Response:
        list_params.append(request.url.params)
        return httpx.Response(200, json={})

    result = _run_page(
        GmailConnector,
        handler,
        _credential(Provider.GMAIL),
        cursor="1704067200|tok-2",
        since=datetime(2030, 1, 1),
    )

    assert isinstance(result, Ok)
    assert result.value.items == []
    assert result.value.next_cursor is None
    assert list_params[0]["q"] == "after:1704067200"
    assert list_params[0]["pageToken"] == "tok-2"


def test_fetch_deals_walks_every_page() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        start = int(request.url.params["start"])
        more = start == 0
        return httpx.Response(
            200,
            json={
                "data": [{"id": start + 1, "title": f"Deal {start + 1}"}],
                "additional_data": {"pagination": {"more_items_in_collection": more, "next_start": 1}},
            },
        )

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            connector = PipedriveConnector(client=client)
            return [deal async for deal in connector.fetch_deals(_credential(Provider.PIPEDRIVE))]

    deals = asyncio.run(_run())

    assert [d.id for d in deals] == [1, 2]
