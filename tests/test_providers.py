import asyncio
import hashlib
import hmac
import json

import httpx
from bson import ObjectId

from conftest import FixedRandom
from smsdesk.core.config import settings
from smsdesk.services.providers import (
    SIMULATION_PROFILES,
    MessageBirdGateway,
    SimulationGateway,
    SMSenvoiGateway,
    TwilioGateway,
    get_gateway,
)


def _message(**overrides):
    message = {"_id": ObjectId(), "to": "+33612345601", "from": "ACME", "content": "Hello"}
    message.update(overrides)
    return message


TWILIO = {"provider": "twilio", "api_key": "AC123", "api_secret": "token"}
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"


async def test_twilio_success(respx_mock):
    route = respx_mock.post(TWILIO_URL).mock(return_value=httpx.Response(201, json={"sid": "SM42"}))

    result = await TwilioGateway().send(TWILIO, _message())

    assert result.success
    assert result.message_id == "SM42"
    assert b"Body=Hello" in route.calls.last.request.content


async def test_twilio_rate_limit_is_retryable(respx_mock):
    respx_mock.post(TWILIO_URL).mock(return_value=httpx.Response(429, text="Too Many Requests"))

    result = await TwilioGateway().send(TWILIO, _message())

    assert not result.success
    assert result.retryable
    assert result.error == "Twilio API error: 429"


async def test_twilio_client_error_is_permanent(respx_mock):
    respx_mock.post(TWILIO_URL).mock(return_value=httpx.Response(400, json={"message": "Invalid To"}))

    result = await TwilioGateway().send(TWILIO, _message())

    assert not result.success
    assert not result.retryable


async def test_twilio_timeout_is_retryable(respx_mock):
    respx_mock.post(TWILIO_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

    result = await TwilioGateway().send(TWILIO, _message())

    assert result.error == "Twilio API timeout"
    assert result.retryable


async def test_twilio_missing_credentials():
    result = await TwilioGateway().send({"provider": "twilio"}, _message())
    assert not result.success
    assert not result.retryable


async def test_messagebird_strips_plus_from_recipient(respx_mock):
    route = respx_mock.post("https://rest.messagebird.com/messages").mock(
        return_value=httpx.Response(201, json={"id": "mb-1"})
    )

    result = await MessageBirdGateway().send({"provider": "messagebird", "api_key": "key"}, _message())

    assert result.success
    assert result.message_id == "mb-1"
    request = route.calls.last.request
    assert request.headers["Authorization"] == "AccessKey key"
    assert b'"recipients":["33612345601"]' in request.content.replace(b" ", b"")


SMSENVOI = {"provider": "smsenvoi", "api_key": "user", "api_secret": "pass"}


async def test_smsenvoi_logs_in_then_sends(respx_mock):
    respx_mock.route(method="GET", host="api.smsenvoi.com", path="/API/v1.0/REST/login").mock(
        return_value=httpx.Response(200, text="UK123;SK456")
    )
    send = respx_mock.post("https://api.smsenvoi.com/API/v1.0/REST/sms").mock(
        return_value=httpx.Response(201, json={"result": "OK", "order_id": "ord-9"})
    )

    result = await SMSenvoiGateway().send(SMSENVOI, _message())

    assert result.success
    assert result.message_id == "ord-9"
    assert send.calls.last.request.headers["user_key"] == "UK123"
    assert send.calls.last.request.headers["Session_key"] == "SK456"


async def test_smsenvoi_login_failure(respx_mock):
    respx_mock.route(method="GET", host="api.smsenvoi.com", path="/API/v1.0/REST/login").mock(
        return_value=httpx.Response(401)
    )

    result = await SMSenvoiGateway().send(SMSENVOI, _message())

    assert not result.success
    assert result.error == "SMSenvoi authentication failed: 401"


async def test_smsenvoi_error_result(respx_mock):
    respx_mock.route(method="GET", host="api.smsenvoi.com", path="/API/v1.0/REST/login").mock(
        return_value=httpx.Response(200, text="UK123;SK456")
    )
    respx_mock.post("https://api.smsenvoi.com/API/v1.0/REST/sms").mock(
        return_value=httpx.Response(200, json={"result": "NO_CREDITS"})
    )

    result = await SMSenvoiGateway().send(SMSENVOI, _message())

    assert result.error == "SMSenvoi error: NO_CREDITS"


def _simulation(value):
    return SimulationGateway(rng=FixedRandom(value), simulate_latency=False, deliver_reports=False)


SIMULATION = {"provider": "simulation", "settings": {"simulation_type": "testing"}}


async def test_simulation_success_and_cached_duplicate():
    gateway = _simulation(0.0)
    message = _message()

    first = await gateway.send(SIMULATION, message)
    second = await gateway.send(SIMULATION, message)

    assert first.success
    assert first.message_id.startswith("sim_testing_")
    assert second.success
    assert second.raw["cached"] is True


async def test_simulation_failure_allows_resend():
    gateway = _simulation(0.99)
    message = _message()

    first = await gateway.send(SIMULATION, message)
    assert not first.success
    assert not first.retryable

    second = await gateway.send(SIMULATION, message)
    assert "cached" not in second.raw


async def test_simulation_unknown_profile():
    result = await _simulation(0.0).send({"settings": {"simulation_type": "gold"}}, _message())
    assert result.error == "Unknown simulation config: gold"


def test_simulation_delivery_report_format():
    report = _simulation(0.0).build_delivery_report("abc", SIMULATION_PROFILES["testing"], "sim_testing_1")
    assert report["messageId"] == "abc"
    assert report["providerMessageId"] == "sim_testing_1"
    assert report["status"] == "delivered"

    report = _simulation(0.999).build_delivery_report("abc", SIMULATION_PROFILES["testing"], "sim_testing_1")
    assert report["status"] == "undelivered"
    assert report["errorCode"] == "EXPIRED"


async def test_simulation_report_delay_follows_reports_in_flight(monkeypatch):
    gateway = SimulationGateway(rng=FixedRandom(0.0), simulate_latency=False)
    delays, posted = [], []
    deliver = gateway._deliver_later

    async def record_delay(internal_id, profile, gateway_id, delay):
        delays.append(delay)
        await deliver(internal_id, profile, gateway_id, 0)

    async def record_post(internal_id, profile, gateway_id):
        posted.append(internal_id)

    monkeypatch.setattr(gateway, "_deliver_later", record_delay)
    monkeypatch.setattr(gateway, "_post_delivery_report", record_post)

    for _ in range(3):
        await gateway.send(SIMULATION, _message())
        await asyncio.gather(*list(gateway._tasks))
    assert delays == [1.5, 1.5, 1.5]

    await gateway.send(SIMULATION, _message())
    await gateway.send(SIMULATION, _message())
    await asyncio.gather(*list(gateway._tasks))
    assert delays[3:] == [1.5, 2.5]

    assert len(posted) == 5
    assert not gateway._scheduled


async def test_simulation_forgets_messages_no_longer_pending():
    gateway = _simulation(0.0)
    message = _message()
    await gateway.send(SIMULATION, message)

    assert gateway.forget_sent({"still-queued"}) == 1
    again = await gateway.send(SIMULATION, message)
    assert "cached" not in again.raw


async def test_simulation_report_is_signed(respx_mock, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_SECRET", "s3cret")
    url = f"{settings.WEBHOOK_BASE_URL.rstrip('/')}{settings.API_PREFIX}/sms/webhook/delivery"
    route = respx_mock.post(url).mock(return_value=httpx.Response(200, json={"success": True}))

    await _simulation(0.0)._post_delivery_report("abc", SIMULATION_PROFILES["testing"], "sim_testing_1")

    request = route.calls.last.request
    assert json.loads(request.content)["messageId"] == "abc"
    expected = hmac.new(b"s3cret", request.content, hashlib.sha256).hexdigest()
    assert request.headers["X-Webhook-Signature"] == expected


async def test_unknown_provider_type_fails_permanently():
    result = await get_gateway("carrier-pigeon").send({}, _message())
    assert not result.success
    assert not result.retryable
    assert result.error == "Provider integration not implemented: carrier-pigeon"
