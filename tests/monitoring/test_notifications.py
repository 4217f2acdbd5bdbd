"""
Tests for Escalation Notifications.

Formatter output per channel, the in-process broadcaster and
the HTTP gateways against a local aiohttp server.
"""

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.config import EmailConfig, SmsConfig
from core.exceptions import GatewayError
from database import AlertRecord, Employee
from monitoring.notifications import (
    ALERTS_TOPIC,
    EscalationContext,
    EscalationFormatter,
    HttpEmailGateway,
    InProcessBroadcaster,
    TwilioSmsGateway,
    employee_topic,
    format_local_time,
)


def make_alert(**overrides):
    fields = dict(
        id=7,
        agent_id="agent-1",
        metric_type="cpu",
        alert_type="threshold",
        severity="critical",
        indicator_count=3,
        contributing_indicators={},
        metric_snapshot={"cpu_percent": 99.0},
        title="CPU <saturated>",
        description="CRITICAL threshold alert: 3 indicators triggered on cpu",
        triggered_at=datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return AlertRecord(**fields)


def make_employee(tz=None):
    return Employee(id="emp-1", first_name="Lee & Co", last_name="Tester", timezone=tz)


@pytest.fixture
def ctx():
    return EscalationContext(
        alert=make_alert(),
        agent_name="web-01",
        policy_name="Night shift",
        step_order=2,
        minutes_unacknowledged=26,
    )


@pytest.fixture
def formatter():
    return EscalationFormatter("https://ops.example.com/")


# ============================================================
# FORMATTER
# ============================================================

class TestFormatter:
    """Tests for EscalationFormatter."""

    def test_email_subject(self, formatter, ctx):
        assert formatter.email_subject(ctx) == "[ESCALATED] Alert: CPU <saturated> - CRITICAL"

    def test_sms_body(self, formatter, ctx):
        assert formatter.sms_body(ctx) == (
            "[ESCALATED] CRITICAL Alert: CPU <saturated> on web-01. "
            "Unacknowledged for 26 minutes. Please check dashboard."
        )

    def test_email_html_is_escaped(self, formatter, ctx):
        body = formatter.email_html(ctx, make_employee())

        assert "CPU &lt;saturated&gt;" in body
        assert "<saturated>" not in body
        assert "Hello Lee &amp; Co" in body
        assert "has not been acknowledged for <b>26 minutes</b>" in body
        assert "Night shift (step 2)" in body
        assert 'href="https://ops.example.com/alerts/7"' in body

    def test_email_text(self, formatter, ctx):
        text = formatter.email_text(ctx, make_employee("UTC"))

        assert text.startswith("ESCALATED ALERT: CPU <saturated>")
        assert "Triggered: 2024-03-04 10:00:00 UTC" in text
        assert text.endswith("View alert: https://ops.example.com/alerts/7")

    def test_websocket_payload(self, formatter, ctx):
        payload = formatter.websocket_payload(ctx)

        assert payload["type"] == "alert:escalated"
        assert payload["data"]["alert"]["id"] == 7
        assert payload["data"]["alert"]["agent_name"] == "web-01"
        assert payload["data"]["alert"]["triggered_at"] == "2024-03-04T10:00:00+00:00"
        assert payload["data"]["escalation"] == {
            "policy_name": "Night shift",
            "step_number": 2,
            "minutes_unacknowledged": 26,
        }


class TestLocalTime:
    """Times render in the responder's zone, DST included."""

    def test_winter_offset(self):
        moment = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)
        assert format_local_time(moment, "America/New_York") == "2024-03-04 05:00:00 EST"

    def test_summer_offset(self):
        moment = datetime(2024, 7, 1, 16, 0, tzinfo=timezone.utc)
        assert format_local_time(moment, "America/New_York") == "2024-07-01 12:00:00 EDT"

    def test_across_spring_forward(self):
        before = datetime(2024, 3, 10, 6, 59, tzinfo=timezone.utc)
        after = datetime(2024, 3, 10, 7, 1, tzinfo=timezone.utc)
        assert format_local_time(before, "America/New_York") == "2024-03-10 01:59:00 EST"
        assert format_local_time(after, "America/New_York") == "2024-03-10 03:01:00 EDT"

    def test_naive_is_treated_as_utc(self):
        assert format_local_time(datetime(2024, 3, 4, 10, 0), "Europe/Berlin") == "2024-03-04 11:00:00 CET"

    @pytest.mark.parametrize("tz", [None, "", "Mars/Olympus_Mons"])
    def test_missing_or_unknown_zone_falls_back_to_utc(self, tz):
        moment = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)
        assert format_local_time(moment, tz) == "2024-03-04 10:00:00 UTC"


# ============================================================
# BROADCASTER
# ============================================================

class TestInProcessBroadcaster:
    """Tests for topic fan-out."""

    @pytest.mark.asyncio
    async def test_fan_out_to_topic_subscribers_only(self):
        broadcaster = InProcessBroadcaster()
        first = broadcaster.subscribe(ALERTS_TOPIC)
        second = broadcaster.subscribe(ALERTS_TOPIC)
        other = broadcaster.subscribe(employee_topic("emp-9"))

        delivered = await broadcaster.publish(ALERTS_TOPIC, {"type": "alert:created"})

        assert delivered == 2
        assert (await first.get(timeout=1))["type"] == "alert:created"
        assert (await second.get(timeout=1))["type"] == "alert:created"
        assert other.queue.empty()

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        assert await InProcessBroadcaster().publish("nobody", {"type": "x"}) == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        broadcaster = InProcessBroadcaster(queue_size=1)
        slow = broadcaster.subscribe(ALERTS_TOPIC)

        assert await broadcaster.publish(ALERTS_TOPIC, {"type": "one"}) == 1
        assert await broadcaster.publish(ALERTS_TOPIC, {"type": "two"}) == 0
        assert (await slow.get(timeout=1))["type"] == "one"

    @pytest.mark.asyncio
    async def test_closed_subscription_stops_receiving(self):
        broadcaster = InProcessBroadcaster()
        subscription = broadcaster.subscribe(ALERTS_TOPIC)
        subscription.close()

        assert broadcaster.subscriber_count(ALERTS_TOPIC) == 0
        assert await broadcaster.publish(ALERTS_TOPIC, {"type": "x"}) == 0
        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    def test_employee_topic(self):
        assert employee_topic("abc") == "employee:abc"


# ============================================================
# GATEWAYS
# ============================================================

@pytest_asyncio.fixture
async def fake_api():
    received = []

    async def send_email(request):
        received.append((request.headers.get("Authorization"), await request.json()))
        return web.json_response({"id": "msg-42"})

    async def reject_email(request):
        return web.Response(status=503, text="mailer overloaded")

    async def twilio_messages(request):
        form = await request.post()
        received.append((request.headers.get("Authorization"), dict(form)))
        if form["To"] == "+10000000000":
            return web.json_response({"message": "invalid number"}, status=400)
        return web.json_response({"sid": "SM42"}, status=201)

    app = web.Application()
    app.router.add_post("/send", send_email)
    app.router.add_post("/broken", reject_email)
    app.router.add_post("/2010-04-01/Accounts/AC1/Messages.json", twilio_messages)

    server = TestServer(app)
    await server.start_server()
    yield server, received
    await server.close()


class TestGateways:
    """Tests for the HTTP email and Twilio SMS gateways."""

    @pytest.mark.asyncio
    async def test_email_posts_json_with_bearer_key(self, fake_api):
        server, received = fake_api
        gateway = HttpEmailGateway(
            EmailConfig(api_url=str(server.make_url("/send")), api_key="k-1", from_address="a@x"),
            timeout_seconds=2,
        )
        try:
            delivery_id = await gateway.send_email("ops@example.com", "subj", "<p>h</p>", "t")
        finally:
            await gateway.close()

        assert delivery_id == "msg-42"
        auth, body = received[0]
        assert auth == "Bearer k-1"
        assert body == {"from": "a@x", "to": "ops@example.com", "subject": "subj", "html": "<p>h</p>", "text": "t"}

    @pytest.mark.asyncio
    async def test_email_error_status_raises(self, fake_api):
        server, _ = fake_api
        gateway = HttpEmailGateway(
            EmailConfig(api_url=str(server.make_url("/broken")), api_key="k-1"), timeout_seconds=2
        )
        try:
            with pytest.raises(GatewayError) as exc:
                await gateway.send_email("ops@example.com", "s", "h", "t")
        finally:
            await gateway.close()

        assert exc.value.status_code == 503
        assert "mailer overloaded" in str(exc.value)

    @pytest.mark.asyncio
    async def test_sms_posts_form_with_basic_auth(self, fake_api):
        server, received = fake_api
        gateway = TwilioSmsGateway(
            SmsConfig(
                account_sid="AC1",
                auth_token="secret",
                from_number="+15550000",
                api_base=str(server.make_url("/2010-04-01")),
            ),
            timeout_seconds=2,
        )
        try:
            sid = await gateway.send_sms("+15551234", "hello")
            with pytest.raises(GatewayError) as exc:
                await gateway.send_sms("+10000000000", "hello")
        finally:
            await gateway.close()

        assert sid == "SM42"
        auth, form = received[0]
        assert auth == "Basic QUMxOnNlY3JldA=="
        assert form == {"To": "+15551234", "From": "+15550000", "Body": "hello"}
        assert exc.value.status_code == 400
        assert "invalid number" in str(exc.value)

    @pytest.mark.asyncio
    async def test_unconfigured_gateways_refuse(self):
        with pytest.raises(GatewayError):
            await HttpEmailGateway(EmailConfig()).send_email("a@b", "s", "h", "t")
        with pytest.raises(GatewayError):
            await TwilioSmsGateway(SmsConfig()).send_sms("+1", "b")

    @pytest.mark.asyncio
    async def test_unreachable_api_raises_gateway_error(self):
        gateway = HttpEmailGateway(
            EmailConfig(api_url="http://127.0.0.1:9/send", api_key="k"), timeout_seconds=2
        )
        try:
            with pytest.raises(GatewayError):
                await gateway.send_email("a@b", "s", "h", "t")
        finally:
            await gateway.close()
