"""
Tests for the push (FCM) and WhatsApp (Twilio) channel adapters.

Twilio traffic goes through httpx.MockTransport; FCM's send_each is
monkeypatched so no Firebase project is needed.
"""

from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from backend.app.alerts.channels import push as push_module
from backend.app.alerts.channels.push import FirebasePushAdapter
from backend.app.alerts.channels.whatsapp import (
    TwilioWhatsAppAdapter,
    format_whatsapp_body,
    render_template,
)
from backend.app.alerts.models import ChannelMessage


def _message(body: str = "Fire reported 0.3km from your location. Stay alert.") -> ChannelMessage:
    return ChannelMessage(title="Emergency Alert", body=body, data={"sos_id": "SOS-1"})


def _twilio(handler, **kwargs) -> TwilioWhatsAppAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioWhatsAppAdapter(
        provider="twilio",
        account_sid="AC123",
        auth_token="secret",
        from_number="+14155238886",
        client=client,
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# WhatsApp
# ═══════════════════════════════════════════════════════════════════════════

class TestWhatsAppFormatting:

    def test_bold_title(self):
        assert format_whatsapp_body(_message("hello")) == "*Emergency Alert*\n\nhello"

    def test_render_template(self):
        msg = render_template(
            "sos_received",
            {"user_name": "Asha", "sos_id": "SOS-1", "review_time": "5-10 minutes"},
        )
        assert "Asha" in msg.body and "SOS-1" in msg.body and "5-10 minutes" in msg.body

    def test_unknown_template(self):
        with pytest.raises(ValueError, match="Unsupported template"):
            render_template("sos_exploded", {})

    def test_missing_template_parameter(self):
        with pytest.raises(ValueError):
            render_template("sos_approved", {"user_name": "Asha"})


class TestWhatsAppSimulation:

    def test_simulated_send_succeeds(self):
        adapter = TwilioWhatsAppAdapter()
        outcome = asyncio.run(adapter.send("+919811111111", _message()))
        assert outcome.success
        assert outcome.provider_message_id.startswith("sim-wa-")

    def test_invalid_number_is_failed_outcome(self):
        adapter = TwilioWhatsAppAdapter()
        outcome = asyncio.run(adapter.send("98111", _message()))
        assert not outcome.success
        assert "Invalid phone number" in outcome.error

    def test_empty_number_raises(self):
        with pytest.raises(ValueError):
            asyncio.run(TwilioWhatsAppAdapter().send("", _message()))

    def test_empty_body_raises(self):
        with pytest.raises(ValueError):
            asyncio.run(TwilioWhatsAppAdapter().send("+919811111111", _message("")))

    def test_twilio_requires_credentials(self):
        with pytest.raises(ValueError):
            TwilioWhatsAppAdapter(provider="twilio", account_sid="AC1")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            TwilioWhatsAppAdapter(provider="carrier-pigeon")


class TestWhatsAppTwilio:

    def test_successful_send_posts_form(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization", "")
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        outcome = asyncio.run(_twilio(handler).send("+919811111111", _message()))

        assert outcome.success and outcome.provider_message_id == "SM42"
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"]["To"] == ["whatsapp:+919811111111"]
        assert seen["form"]["From"] == ["whatsapp:+14155238886"]
        assert seen["form"]["Body"][0].startswith("*Emergency Alert*")

    def test_sms_mode_uses_bare_numbers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(201, json={"sid": "SM43"})

        asyncio.run(_twilio(handler, use_sms=True).send("+919811111111", _message()))
        assert seen["form"]["To"] == ["+919811111111"]

    def test_provider_rejection_is_failed_outcome(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 63016, "message": "Outside session window"})

        outcome = asyncio.run(_twilio(handler).send("+919811111111", _message()))
        assert not outcome.success
        assert outcome.error == "Outside session window (code=63016)"

    def test_transport_error_is_failed_outcome(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = asyncio.run(_twilio(handler).send("+919811111111", _message()))
        assert not outcome.success
        assert "Transport error" in outcome.error

    def test_send_many_preserves_order(self):
        def handler(request: httpx.Request) -> httpx.Response:
            to = parse_qs(request.content.decode())["To"][0]
            if to.endswith("2222"):
                return httpx.Response(500, json={"message": "boom"})
            return httpx.Response(201, json={"sid": f"SM-{to[-4:]}"})

        outcomes = asyncio.run(_twilio(handler).send_many([
            ("+919811111111", _message()),
            ("+919822222222", _message()),
            ("+919833333333", _message()),
        ]))
        assert [o.success for o in outcomes] == [True, False, True]
        assert outcomes[2].provider_message_id == "SM-3333"

    def test_slow_send_times_out_alone(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            to = parse_qs(request.content.decode())["To"][0]
            if to.endswith("1111"):
                await asyncio.sleep(2.0)
            return httpx.Response(201, json={"sid": f"SM-{to[-4:]}"})

        outcomes = asyncio.run(_twilio(handler).send_many(
            [("+919811111111", _message()), ("+919833333333", _message())],
            timeout=0.1,
        ))

        assert [o.success for o in outcomes] == [False, True]
        assert outcomes[0].error == "Timed out after 0.1s"
        assert outcomes[1].provider_message_id == "SM-3333"


# ═══════════════════════════════════════════════════════════════════════════
# Push
# ═══════════════════════════════════════════════════════════════════════════

class TestPush:

    def test_simulated_send(self):
        outcome = asyncio.run(FirebasePushAdapter().send("tok-abcdef", _message()))
        assert outcome.success
        assert outcome.provider_message_id.startswith("sim-push-")

    def test_empty_token_raises(self):
        with pytest.raises(ValueError):
            asyncio.run(FirebasePushAdapter().send("", _message()))

    def test_non_string_data_raises(self):
        bad = ChannelMessage(title="t", body="b", data={"distance_km": 0.3})
        with pytest.raises(ValueError):
            asyncio.run(FirebasePushAdapter().send("tok-abcdef", bad))

    def test_fcm_requires_app(self):
        with pytest.raises(ValueError):
            FirebasePushAdapter(provider="fcm")

    def test_fcm_batch_maps_per_token_results(self, monkeypatch):
        calls = []

        def fake_send_each(messages, app=None):
            calls.append((len(messages), app))
            return SimpleNamespace(
                success_count=1,
                responses=[
                    SimpleNamespace(success=True, message_id="projects/p/messages/1", exception=None),
                    SimpleNamespace(success=False, message_id=None,
                                    exception=Exception("Requested entity was not found.")),
                ],
            )

        monkeypatch.setattr(push_module.messaging, "send_each", fake_send_each)
        app = object()
        adapter = FirebasePushAdapter(provider="fcm", app=app)

        outcomes = asyncio.run(adapter.send_many([
            ("tok-good-123", _message()),
            ("tok-stale-456", _message()),
        ]))

        assert calls == [(2, app)]
        assert outcomes[0].success and outcomes[0].provider_message_id == "projects/p/messages/1"
        assert not outcomes[1].success
        assert "not found" in outcomes[1].error

    def test_fcm_whole_batch_failure(self, monkeypatch):
        def fake_send_each(messages, app=None):
            raise RuntimeError("quota exceeded")

        monkeypatch.setattr(push_module.messaging, "send_each", fake_send_each)
        adapter = FirebasePushAdapter(provider="fcm", app=object())

        outcomes = asyncio.run(adapter.send_many([("tok-a-1234", _message()), ("tok-b-1234", _message())]))
        assert [o.success for o in outcomes] == [False, False]
        assert outcomes[0].error == "quota exceeded"

    def test_fcm_batch_timeout(self, monkeypatch):
        def slow_send_each(messages, app=None):
            time.sleep(0.3)

        monkeypatch.setattr(push_module.messaging, "send_each", slow_send_each)
        adapter = FirebasePushAdapter(provider="fcm", app=object())

        outcomes = asyncio.run(adapter.send_many(
            [("tok-a-1234", _message()), ("tok-b-1234", _message())], timeout=0.05,
        ))
        assert [o.error for o in outcomes] == ["Timed out after 0.05s"] * 2
