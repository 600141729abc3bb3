"""
Unit tests for webhook event filtering, signing and fan-out.
"""
import json

import httpx
import pytest

from notification_engine.config import WebhookConfig
from notification_engine.domain.entities import NotificationType, WebhookSubscription
from notification_engine.domain.webhooks import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookDispatcher,
    parse_events,
    should_trigger,
    sign_payload,
    verify_signature,
)


class TestParseEvents:
    """Tests for event filter normalization."""

    def test_list(self):
        assert parse_events(["payment_captured", "NEW_MESSAGE"]) == {"PAYMENT_CAPTURED", "NEW_MESSAGE"}

    def test_json_string(self):
        assert parse_events('["a", "b"]') == {"A", "B"}

    def test_delimited_string(self):
        assert parse_events("a, b;c  d") == {"A", "B", "C", "D"}

    def test_mapping_values(self):
        assert parse_events({"first": "new_message", "second": "*"}) == {"NEW_MESSAGE", "*"}

    def test_empty_inputs(self):
        assert parse_events(None) == set()
        assert parse_events("") == set()
        assert parse_events([]) == set()

    def test_unsupported_type(self):
        assert parse_events(42) == set()


class TestShouldTrigger:

    def test_empty_matches_all(self):
        assert should_trigger(set(), "NEW_MESSAGE")

    def test_wildcard(self):
        assert should_trigger({"*"}, "NEW_MESSAGE")

    def test_exact_match(self):
        assert should_trigger({"PAYMENT_CAPTURED"}, "payment_captured")
        assert not should_trigger({"PAYMENT_CAPTURED"}, "NEW_MESSAGE")


class TestSignature:

    def test_known_vector(self):
        # HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog")
        expected = "f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8"
        assert sign_payload("The quick brown fox jumps over the lazy dog", "key") == expected

    def test_verify(self):
        body = b'{"a":1}'
        signature = sign_payload(body, "s3cret")
        assert verify_signature(body, "s3cret", signature)
        assert not verify_signature(body, "other", signature)


def _dispatcher(store, handler) -> WebhookDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(store, WebhookConfig(timeout_seconds=10), client=client)


class TestWebhookDispatcher:
    """Tests for fan-out to subscriptions."""

    @pytest.mark.asyncio
    async def test_signed_post_and_counters(self, store, make_notification):
        webhook = WebhookSubscription(url="https://hooks.example.com/a", secret="s3cret",
                                      auth_header="Bearer abc")
        await store.save_webhook(webhook)
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        notification = make_notification(notification_type=NotificationType.PAYMENT_CAPTURED,
                                         template_variables={"card": "4242"})
        results = await _dispatcher(store, handler).trigger_for_notification(notification)

        assert [r.success for r in results] == [True]
        request = captured[0]
        assert request.headers[EVENT_HEADER] == "PAYMENT_CAPTURED"
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["Content-Type"] == "application/json"
        assert verify_signature(request.content, "s3cret", request.headers[SIGNATURE_HEADER])
        body = json.loads(request.content)
        assert body["notification"]["notification_id"] == str(notification.notification_id)
        assert "template_variables" not in body["notification"]
        assert "deliveredAt" in body

        stored = await store.get_webhook(webhook.webhook_id)
        assert stored.success_count == 1
        assert stored.failure_count == 0
        assert stored.last_triggered is not None

    @pytest.mark.asyncio
    async def test_event_filter(self, store, make_notification):
        await store.save_webhook(WebhookSubscription(url="https://a.example.com", secret="s",
                                                     events=["PAYMENT_CAPTURED"]))
        calls = []
        dispatcher = _dispatcher(store, lambda request: calls.append(request) or httpx.Response(200))

        await dispatcher.trigger_for_notification(
            make_notification(notification_type=NotificationType.NEW_MESSAGE))
        assert calls == []

        await dispatcher.trigger_for_notification(
            make_notification(notification_type=NotificationType.PAYMENT_CAPTURED))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failure_isolated(self, store, make_notification):
        ok = WebhookSubscription(url="https://ok.example.com/hook", secret="s")
        bad = WebhookSubscription(url="https://bad.example.com/hook", secret="s")
        down = WebhookSubscription(url="https://down.example.com/hook", secret="s")
        for webhook in (ok, bad, down):
            await store.save_webhook(webhook)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "bad.example.com":
                return httpx.Response(500)
            if request.url.host == "down.example.com":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(204)

        results = await _dispatcher(store, handler).trigger_for_notification(make_notification())
        by_url = {r.url: r for r in results}
        assert by_url[ok.url].success
        assert by_url[bad.url].error == "HTTP 500"
        assert not by_url[down.url].success

        assert (await store.get_webhook(ok.webhook_id)).success_count == 1
        assert (await store.get_webhook(bad.webhook_id)).failure_count == 1
        assert (await store.get_webhook(down.webhook_id)).failure_count == 1

    @pytest.mark.asyncio
    async def test_inactive_skipped(self, store, make_notification):
        await store.save_webhook(WebhookSubscription(url="https://a.example.com", secret="s",
                                                     is_active=False))
        results = await _dispatcher(store, lambda r: httpx.Response(200)).trigger_for_notification(
            make_notification())
        assert results == []

    @pytest.mark.asyncio
    async def test_non_http_error_isolated(self, store, make_notification):
        ok = WebhookSubscription(url="https://ok.example.com/hook", secret="s")
        unencodable = WebhookSubscription(url="https://bad.example.com/hook", secret="s",
                                          auth_header="Bearer töken")
        await store.save_webhook(ok)
        await store.save_webhook(unencodable)

        results = await _dispatcher(store, lambda r: httpx.Response(200)).trigger_for_notification(
            make_notification())

        by_url = {r.url: r for r in results}
        assert by_url[ok.url].success
        assert not by_url[unencodable.url].success
        assert by_url[unencodable.url].error
        assert (await store.get_webhook(ok.webhook_id)).success_count == 1
        assert (await store.get_webhook(unencodable.webhook_id)).failure_count == 1

    @pytest.mark.asyncio
    async def test_handler_exception_isolated(self, store, make_notification):
        webhook = WebhookSubscription(url="https://a.example.com/hook", secret="s")
        await store.save_webhook(webhook)

        def handler(request: httpx.Request) -> httpx.Response:
            raise ValueError("unexpected")

        results = await _dispatcher(store, handler).trigger_for_notification(make_notification())

        assert [(r.success, r.error) for r in results] == [(False, "unexpected")]
        assert (await store.get_webhook(webhook.webhook_id)).failure_count == 1
