"""Tests for the built-in Stripe, Intercom and Notion connectors."""

import json
import time
from datetime import datetime, timezone

import httpx
import pytest

from app.core.config import AppConfig
from app.core.security import compute_hmac_hex
from app.services.sync.canonical import UNKNOWN_RESOURCE, EventKind
from app.services.sync.connectors import SyncOptions
from app.services.sync.providers import IntercomConnector, NotionConnector, StripeConnector
from app.services.sync.providers.notion import split_page_cursor
from app.services.sync.providers.stripe import detect_stripe_archived_at, parse_signature_header


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def intercom_app() -> AppConfig:
    return AppConfig(
        app_key="intercom_test",
        name="Intercom Test",
        connector="intercom",
        config={"api_key": "ic_token", "webhook_secret": "ic_secret"},
    )


@pytest.fixture
def notion_app() -> AppConfig:
    return AppConfig(
        app_key="notion_test",
        name="Notion Test",
        connector="notion",
        config={"api_key": "secret_notion", "webhook_secret": "notion_secret"},
    )


# ============================================================================
# Stripe
# ============================================================================


def _stripe_header(body: bytes, secret: str = "whsec_test", timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_hmac_hex(secret, f"{timestamp}.".encode() + body, "sha256")
    return f"t={timestamp},v1={signature}"


class TestStripeWebhooks:

    @pytest.mark.asyncio
    async def test_valid_signature(self, stripe_app):
        body = b'{"type": "customer.created", "data": {"object": {"id": "cus_1"}}}'

        result = await StripeConnector().verify_webhook(body, {"stripe-signature": _stripe_header(body)}, stripe_app)

        assert result.valid
        assert result.payload["type"] == "customer.created"

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, stripe_app):
        header = _stripe_header(b'{"amount": 100}')

        result = await StripeConnector().verify_webhook(b'{"amount": 999}', {"stripe-signature": header}, stripe_app)

        assert not result.valid
        assert result.reason == "Invalid webhook signature"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, stripe_app):
        body = b"{}"

        result = await StripeConnector().verify_webhook(
            body, {"stripe-signature": _stripe_header(body, secret="whsec_other")}, stripe_app
        )

        assert not result.valid

    @pytest.mark.asyncio
    async def test_old_timestamp_rejected(self, stripe_app):
        body = b"{}"
        header = _stripe_header(body, timestamp=int(time.time()) - 301)

        result = await StripeConnector().verify_webhook(body, {"stripe-signature": header}, stripe_app)

        assert not result.valid
        assert "tolerance" in result.reason

    @pytest.mark.asyncio
    async def test_any_v1_signature_may_match(self, stripe_app):
        body = b"{}"
        header = _stripe_header(body)
        header = header.replace(",v1=", ",v1=deadbeef,v1=")

        result = await StripeConnector().verify_webhook(body, {"stripe-signature": header}, stripe_app)

        assert result.valid

    @pytest.mark.asyncio
    async def test_missing_header(self, stripe_app):
        result = await StripeConnector().verify_webhook(b"{}", {}, stripe_app)

        assert result.reason == "Missing Stripe-Signature header"

    def test_signature_header_parsing(self):
        assert parse_signature_header("t=1,v1=a, v1=b,v0=c") == {"t": ["1"], "v1": ["a", "b"], "v0": ["c"]}

    @pytest.mark.asyncio
    async def test_canceled_subscription_is_archived_with_items(self, stripe_app):
        connector = StripeConnector()
        payload = {
            "id": "evt_1",
            "type": "customer.subscription.deleted",
            "created": 1700000000,
            "data": {"object": {
                "id": "sub_1",
                "status": "canceled",
                "canceled_at": 1700000000,
                "items": {"data": [{"id": "si_1"}, {"id": "si_2"}], "has_more": False},
            }},
        }

        event = await connector.parse_webhook_event(payload, stripe_app)
        entities = await connector.extract_entities(event, stripe_app)

        assert event.event_type == EventKind.ARCHIVE
        assert event.metadata["event_id"] == "evt_1"
        assert [e.collection_key for e in entities] == [
            "stripe_subscription", "stripe_subscription_item", "stripe_subscription_item",
        ]
        assert entities[0].archived_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, stripe_app):
        event = await StripeConnector().parse_webhook_event(
            {"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}, stripe_app
        )

        assert event.resource_type == UNKNOWN_RESOURCE

    def test_archive_rules(self):
        assert detect_stripe_archived_at("product", {"active": False}) is not None
        assert detect_stripe_archived_at("product", {"active": True}) is None
        assert detect_stripe_archived_at("customer", {"deleted": True}) is None


class TestStripeSync:

    @pytest.mark.asyncio
    async def test_subscription_items_synced_with_parent(self, store, stripe_app):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/subscriptions"
            assert request.url.params["status"] == "all"
            return httpx.Response(200, json={
                "data": [{"id": "sub_1", "status": "active", "items": {"data": [{"id": "si_1"}], "has_more": False}}],
                "has_more": False,
            })

        connector = StripeConnector(http_client=_client(handler))

        result = await connector.sync_resource(stripe_app, "subscription", SyncOptions(store=store))

        assert result.success
        assert await store.get_entity("stripe_test", "stripe_subscription", "sub_1") is not None
        assert await store.get_entity("stripe_test", "stripe_subscription_item", "si_1") is not None

    @pytest.mark.asyncio
    async def test_pages_follow_starting_after(self, store, stripe_app):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.params.get("starting_after"))
            if "starting_after" not in request.url.params:
                return httpx.Response(200, json={"data": [{"id": "prod_1"}, {"id": "prod_2"}], "has_more": True})
            return httpx.Response(200, json={"data": [{"id": "prod_3"}], "has_more": False})

        connector = StripeConnector(http_client=_client(handler))

        result = await connector.sync_resource(stripe_app, "product", SyncOptions(store=store))

        assert seen == [None, "prod_2"]
        assert result.created == 3

    @pytest.mark.asyncio
    async def test_incremental_sends_created_gte(self, store, stripe_app):
        since = datetime(2025, 1, 1, tzinfo=timezone.utc)
        params = {}

        def handler(request: httpx.Request) -> httpx.Response:
            params.update(request.url.params)
            return httpx.Response(200, json={"data": [], "has_more": False})

        connector = StripeConnector(http_client=_client(handler))

        await connector.sync_resource(stripe_app, "customer", SyncOptions(store=store), since=since)

        assert params["created[gte]"] == str(int(since.timestamp()))

    @pytest.mark.asyncio
    async def test_child_resource_cannot_be_synced_alone(self, store, stripe_app):
        result = await StripeConnector().sync_resource(stripe_app, "subscription_item", SyncOptions(store=store))

        assert not result.success

    @pytest.mark.asyncio
    async def test_api_error_is_a_failed_listing(self, store, stripe_app):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Invalid API Key"}})

        connector = StripeConnector(http_client=_client(handler))

        result = await connector.sync_resource(stripe_app, "customer", SyncOptions(store=store))

        assert not result.success
        assert "401" in result.error_messages[0]


# ============================================================================
# Intercom
# ============================================================================


class TestIntercom:

    @pytest.mark.asyncio
    async def test_sha1_signature(self, intercom_app):
        body = b'{"topic": "contact.created"}'
        signature = "sha1=" + compute_hmac_hex("ic_secret", body, "sha1")
        connector = IntercomConnector()

        valid = await connector.verify_webhook(body, {"x-hub-signature": signature}, intercom_app)
        tampered = await connector.verify_webhook(b'{"topic": "x"}', {"x-hub-signature": signature}, intercom_app)

        assert valid.valid
        assert not tampered.valid

    @pytest.mark.asyncio
    async def test_conversation_topic_extracts_parts(self, intercom_app):
        connector = IntercomConnector()
        payload = {
            "topic": "conversation.admin.replied",
            "data": {"item": {
                "id": "conv_1",
                "conversation_parts": {"conversation_parts": [{"id": "part_1"}, {"id": "part_2"}]},
            }},
        }

        event = await connector.parse_webhook_event(payload, intercom_app)
        entities = await connector.extract_entities(event, intercom_app)

        assert event.resource_type == "conversation"
        assert event.event_type == EventKind.UPDATE
        assert [e.external_id for e in entities] == ["conv_1", "part_1", "part_2"]
        assert entities[1].raw_payload["conversation_id"] == "conv_1"

    @pytest.mark.asyncio
    async def test_legacy_user_topic_maps_to_contact(self, intercom_app):
        event = await IntercomConnector().parse_webhook_event(
            {"topic": "user.deleted", "data": {"item": {"id": "u1"}}}, intercom_app
        )

        assert (event.resource_type, event.event_type) == ("contact", EventKind.DELETE)

    @pytest.mark.asyncio
    async def test_incremental_conversations_use_search(self, store, intercom_app):
        since = datetime(2025, 1, 1, tzinfo=timezone.utc)
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "conversations": [{
                    "id": "conv_1",
                    "conversation_parts": {"conversation_parts": [{"id": "part_1"}]},
                }],
                "pages": {},
            })

        connector = IntercomConnector(http_client=_client(handler))

        result = await connector.sync_resource(intercom_app, "conversation", SyncOptions(store=store), since=since)

        assert result.success
        (request,) = requests
        assert request.method == "POST"
        assert request.url.path == "/conversations/search"
        query = json.loads(request.content)["query"]
        assert query == {"field": "updated_at", "operator": ">", "value": int(since.timestamp())}
        assert await store.get_entity("intercom_test", "intercom_conversation_part", "part_1") is not None

    @pytest.mark.asyncio
    async def test_list_pages_follow_starting_after(self, store, intercom_app):
        def handler(request: httpx.Request) -> httpx.Response:
            if "starting_after" not in request.url.params:
                return httpx.Response(200, json={"data": [{"id": "co_1"}], "pages": {"next": {"starting_after": "abc"}}})
            assert request.url.params["starting_after"] == "abc"
            return httpx.Response(200, json={"data": [{"id": "co_2"}], "pages": {"next": None}})

        connector = IntercomConnector(http_client=_client(handler))

        result = await connector.sync_resource(intercom_app, "company", SyncOptions(store=store))

        assert result.created == 2


# ============================================================================
# Notion
# ============================================================================


class TestNotion:

    @pytest.mark.asyncio
    async def test_prefixed_signature(self, notion_app):
        body = b'{"type": "page.created"}'
        signature = "sha256=" + compute_hmac_hex("notion_secret", body, "sha256")

        result = await NotionConnector().verify_webhook(body, {"x-notion-signature": signature}, notion_app)

        assert result.valid

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, notion_app):
        signature = compute_hmac_hex("notion_secret", b"{}", "sha256")

        result = await NotionConnector().verify_webhook(b'{"a": 1}', {"x-notion-signature": signature}, notion_app)

        assert not result.valid

    @pytest.mark.asyncio
    async def test_delete_reads_deleted_object(self, notion_app):
        event = await NotionConnector().parse_webhook_event(
            {"type": "page.deleted", "data": {"deleted_object": {"id": "page-1"}}}, notion_app
        )

        assert event.event_type == EventKind.DELETE
        assert event.external_id == "page-1"

    @pytest.mark.asyncio
    async def test_undelete_is_an_update(self, notion_app):
        page = {"id": "page-1", "object": "page", "archived": False}

        event = await NotionConnector().parse_webhook_event(
            {"type": "page.undeleted", "entity": {"id": "page-1"}, "data": {"page": page}}, notion_app
        )
        (entity,) = await NotionConnector().extract_entities(event, notion_app)

        assert event.event_type == EventKind.UPDATE
        assert event.metadata["is_undelete"] is True
        assert entity.id == "page-1"
        assert entity.archived_at is None

    @pytest.mark.asyncio
    async def test_thin_payload_is_fetched(self, notion_app):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/pages/page-1"
            return httpx.Response(200, json={"id": "page-1", "object": "page", "in_trash": True,
                                             "last_edited_time": "2025-02-01T00:00:00Z"})

        connector = NotionConnector(http_client=_client(handler))
        event = await connector.parse_webhook_event(
            {"type": "page.properties_updated", "entity": {"id": "page-1"}, "data": {}}, notion_app
        )

        (entity,) = await connector.extract_entities(event, notion_app)

        assert entity.archived_at == datetime(2025, 2, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_data_source_properties_get_composite_ids(self, notion_app):
        data_source = {
            "id": "ds-1",
            "object": "data_source",
            "properties": {"Name": {"id": "title", "type": "title"}, "Status": {"id": "abc", "type": "select"}},
        }
        connector = NotionConnector()
        event = await connector.parse_webhook_event(
            {"type": "data_source.schema_updated", "entity": {"id": "ds-1"}, "data": {"data_source": data_source}},
            notion_app,
        )

        entities = await connector.extract_entities(event, notion_app)

        assert [e.external_id for e in entities] == ["ds-1", "ds-1:title", "ds-1:abc"]
        assert entities[1].id is None

    def test_page_cursor_split(self):
        assert split_page_cursor(None) == (None, None)
        assert split_page_cursor("ds-1|") == ("ds-1", None)
        assert split_page_cursor("ds-1|cur") == ("ds-1", "cur")

    @pytest.mark.asyncio
    async def test_page_sync_walks_every_data_source(self, store, notion_app):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/search":
                return httpx.Response(200, json={"results": [{"id": "ds-a"}, {"id": "ds-b"}], "has_more": False})
            data_source_id = request.url.path.split("/")[3]
            return httpx.Response(200, json={
                "results": [{"id": f"page-{data_source_id}", "object": "page"}],
                "has_more": False,
            })

        connector = NotionConnector(http_client=_client(handler))

        result = await connector.sync_resource(notion_app, "page", SyncOptions(store=store))

        assert result.created == 2
        assert await store.get_entity("notion_test", "notion_page", "page-ds-b") is not None

    @pytest.mark.asyncio
    async def test_resumed_page_sync_starts_in_cursor_data_source(self, store, notion_app):
        queried = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/search":
                return httpx.Response(200, json={"results": [{"id": "ds-a"}, {"id": "ds-b"}], "has_more": False})
            queried.append((request.url.path, json.loads(request.content).get("start_cursor")))
            return httpx.Response(200, json={"results": [], "has_more": False})

        connector = NotionConnector(http_client=_client(handler))

        await connector.sync_resource(notion_app, "page", SyncOptions(store=store, cursor="ds-b|next-1"))

        assert queried == [("/v1/data_sources/ds-b/query", "next-1")]
