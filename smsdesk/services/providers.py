"""
smsdesk/services/providers.py

Purpose: SMS provider gateways

- Common SendResult / BaseGateway interface
- Simulation gateway with quality profiles and delivery reports
- Twilio, MessageBird and SMSenvoi REST integrations via httpx
- Gateway registry keyed by provider type
"""

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Optional, Set

import httpx

from smsdesk.core.config import settings
from smsdesk.core.logging import get_logger
from smsdesk.services.delivery_service import (
    normalize_delivery_report,
    process_delivery_report,
    sign_webhook_body,
)

logger = get_logger(__name__)


@dataclass
class SendResult:
    """
    Outcome of handing one message to a provider.
    """
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class BaseGateway:
    """Interface implemented by every provider integration"""

    provider_type: str = ""

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        """
        Sends one message.

        Args:
            provider: Provider document (credentials, endpoint, settings)
            message: Message document (_id, to, from, content)

        Returns:
            SendResult; never raises for provider-side errors
        """
        raise NotImplementedError


# ==============================================
# SIMULATION
# ==============================================

@dataclass
class SimulationProfile:
    name: str
    provider_id: str
    provider_name: str
    success_rate: float
    delivery_rate: float
    min_delay_ms: int
    max_delay_ms: int
    delivery_delay_ms: int
    temporary_failure_rate: float
    permanent_failure_rate: float
    rate_limit_simulation: bool
    max_concurrent: int
    rate_limit_per_minute: int = 100


SIMULATION_PROFILES: Dict[str, SimulationProfile] = {
    "premium": SimulationProfile(
        name="premium",
        provider_id="sim_premium",
        provider_name="Premium SMS Gateway",
        success_rate=0.98,
        delivery_rate=0.96,
        min_delay_ms=100,
        max_delay_ms=500,
        delivery_delay_ms=2000,
        temporary_failure_rate=0.01,
        permanent_failure_rate=0.01,
        rate_limit_simulation=True,
        max_concurrent=100,
    ),
    "standard": SimulationProfile(
        name="standard",
        provider_id="sim_standard",
        provider_name="Standard SMS Gateway",
        success_rate=0.94,
        delivery_rate=0.92,
        min_delay_ms=200,
        max_delay_ms=1000,
        delivery_delay_ms=3000,
        temporary_failure_rate=0.03,
        permanent_failure_rate=0.03,
        rate_limit_simulation=True,
        max_concurrent=50,
    ),
    "budget": SimulationProfile(
        name="budget",
        provider_id="sim_budget",
        provider_name="Budget SMS Gateway",
        success_rate=0.88,
        delivery_rate=0.85,
        min_delay_ms=300,
        max_delay_ms=2000,
        delivery_delay_ms=8000,
        temporary_failure_rate=0.07,
        permanent_failure_rate=0.05,
        rate_limit_simulation=True,
        max_concurrent=20,
    ),
    "testing": SimulationProfile(
        name="testing",
        provider_id="sim_testing",
        provider_name="Testing SMS Gateway",
        success_rate=0.95,
        delivery_rate=0.90,
        min_delay_ms=50,
        max_delay_ms=200,
        delivery_delay_ms=1500,
        temporary_failure_rate=0.03,
        permanent_failure_rate=0.02,
        rate_limit_simulation=False,
        max_concurrent=1000,
    ),
}

TEMPORARY_ERRORS = [
    "Gateway temporarily unavailable",
    "Network timeout",
    "Service overloaded",
    "Temporary routing failure",
]

PERMANENT_ERRORS = [
    "Invalid phone number format",
    "Destination not reachable",
    "Message content rejected",
    "Blocked by carrier",
    "Number does not exist",
]


class SimulationGateway(BaseGateway):
    """
    Simulated provider used for load tests and demos.

    Each internal message id is sent at most once; a repeated send returns
    a cached success. Every successful send schedules exactly one delivery
    report, posted to our own delivery webhook.
    """

    provider_type = "simulation"

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        simulate_latency: bool = True,
        deliver_reports: bool = True,
    ):
        self.rng = rng or random.Random()
        self.simulate_latency = simulate_latency
        self.deliver_reports = deliver_reports
        self._sent: Set[str] = set()
        self._scheduled: Set[str] = set()
        self._active: Dict[str, int] = {}
        self._rate_windows: Dict[str, Dict[str, float]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def reset(self):
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        self._sent.clear()
        self._scheduled.clear()
        self._active.clear()
        self._rate_windows.clear()

    def _is_rate_limited(self, profile: SimulationProfile) -> bool:
        now = time.monotonic()
        window = self._rate_windows.get(profile.provider_id)
        if not window or now >= window["reset_at"]:
            return False
        return window["count"] >= profile.rate_limit_per_minute

    def _record_send(self, profile: SimulationProfile):
        now = time.monotonic()
        window = self._rate_windows.get(profile.provider_id)
        if not window or now >= window["reset_at"]:
            self._rate_windows[profile.provider_id] = {"count": 1, "reset_at": now + 60}
        else:
            window["count"] += 1

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        profile_name = (provider.get("settings") or {}).get("simulation_type", "standard")
        profile = SIMULATION_PROFILES.get(profile_name)
        if not profile:
            return SendResult(
                success=False,
                error=f"Unknown simulation config: {profile_name}",
                retryable=False,
            )

        internal_id = str(message["_id"])

        if internal_id in self._sent:
            logger.warning(f"⚠️ Message {internal_id} already sent, returning cached result")
            return SendResult(
                success=True,
                message_id=f"{profile.provider_id}_cached_{int(time.time() * 1000)}",
                raw={"cached": True, "reason": "Duplicate send prevented"},
            )

        self._sent.add(internal_id)

        try:
            result = await self._attempt(profile, internal_id)
        except Exception:
            self._sent.discard(internal_id)
            raise

        if not result.success:
            # Failed attempts may be sent again on retry
            self._sent.discard(internal_id)
        return result

    async def _attempt(self, profile: SimulationProfile, internal_id: str) -> SendResult:
        if profile.rate_limit_simulation and self._is_rate_limited(profile):
            return SendResult(
                success=False,
                error="Rate limit exceeded",
                retryable=True,
                raw={"error_code": 429, "error_message": "Too many requests"},
            )

        current = self._active.get(profile.provider_id, 0)
        if current >= profile.max_concurrent:
            return SendResult(
                success=False,
                error="Maximum concurrent connections reached",
                retryable=True,
                raw={"error_code": 503, "error_message": "Service temporarily unavailable"},
            )

        self._active[profile.provider_id] = current + 1
        try:
            delay_ms = self.rng.uniform(profile.min_delay_ms, profile.max_delay_ms)
            if self.simulate_latency:
                await asyncio.sleep(delay_ms / 1000)

            if self.rng.random() < profile.success_rate:
                gateway_id = f"{profile.provider_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
                self._record_send(profile)
                self._schedule_delivery_report(internal_id, profile, gateway_id)
                return SendResult(
                    success=True,
                    message_id=gateway_id,
                    raw={
                        "message_id": gateway_id,
                        "status": "accepted",
                        "timestamp": datetime.utcnow().isoformat(),
                        "provider": profile.provider_name,
                    },
                )

            total_failure = profile.temporary_failure_rate + profile.permanent_failure_rate
            temporary = self.rng.random() < (profile.temporary_failure_rate / total_failure)
            error = self.rng.choice(TEMPORARY_ERRORS if temporary else PERMANENT_ERRORS)
            return SendResult(
                success=False,
                error=error,
                retryable=temporary,
                raw={"error_code": 500 if temporary else 400, "error_message": error},
            )
        finally:
            self._active[profile.provider_id] = max(0, self._active.get(profile.provider_id, 1) - 1)

    def _schedule_delivery_report(self, internal_id: str, profile: SimulationProfile, gateway_id: str):
        if not self.deliver_reports or internal_id in self._scheduled:
            return

        self._scheduled.add(internal_id)
        # Stagger reports by one second per report still in flight
        delay = (profile.delivery_delay_ms + len(self._tasks) * 1000) / 1000

        task = asyncio.create_task(self._deliver_later(internal_id, profile, gateway_id, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def build_delivery_report(self, internal_id: str, profile: SimulationProfile, gateway_id: str) -> Dict[str, Any]:
        delivered = self.rng.random() < profile.delivery_rate
        return {
            "messageId": internal_id,
            "providerMessageId": gateway_id,
            "status": "delivered" if delivered else "undelivered",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "errorCode": None if delivered else "EXPIRED",
            "errorMessage": None if delivered else "Message not delivered to handset",
            "providerId": profile.provider_id,
        }

    async def _deliver_later(self, internal_id: str, profile: SimulationProfile, gateway_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self._post_delivery_report(internal_id, profile, gateway_id)
        finally:
            self._scheduled.discard(internal_id)

    def forget_sent(self, keep_ids: Set[str]) -> int:
        """Drops sent-message tracking for ids that are no longer waiting to be sent."""
        stale = self._sent - keep_ids
        self._sent -= stale
        return len(stale)

    async def _post_delivery_report(self, internal_id: str, profile: SimulationProfile, gateway_id: str):
        report = self.build_delivery_report(internal_id, profile, gateway_id)
        url = f"{settings.WEBHOOK_BASE_URL.rstrip('/')}{settings.API_PREFIX}/sms/webhook/delivery"

        body = json.dumps(report).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"SMS-Simulation-Provider/{profile.provider_id}",
            "X-Webhook-Source": "simulation",
        }
        signature = sign_webhook_body(body)
        if signature:
            headers["X-Webhook-Signature"] = signature

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    url,
                    content=body,
                    headers=headers,
                    timeout=settings.PROVIDER_HTTP_TIMEOUT,
                )
            if response.status_code < 300:
                logger.debug(f"Simulation delivery report sent: {internal_id} -> {report['status']}")
                return
            logger.error(f"❌ Simulation delivery report rejected: {response.status_code} for {internal_id}")
        except httpx.HTTPError as e:
            logger.error(f"❌ Error calling delivery webhook for {internal_id}: {e}")

        # Webhook unreachable or rejected: apply the report in-process
        try:
            await process_delivery_report(normalize_delivery_report(report))
        except Exception as e:
            logger.error(f"Fallback delivery update failed for {internal_id}: {e}", exc_info=True)


# ==============================================
# TWILIO
# ==============================================

class TwilioGateway(BaseGateway):
    """
    Twilio Programmable SMS.
    api_key = Account SID, api_secret = Auth Token.
    """

    provider_type = "twilio"

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        account_sid = provider.get("api_key")
        auth_token = provider.get("api_secret")
        if not account_sid or not auth_token:
            return SendResult(success=False, error="Twilio credentials missing", retryable=False)

        base_url = (provider.get("api_endpoint") or settings.TWILIO_API_BASE_URL).rstrip("/")
        url = f"{base_url}/2010-04-01/Accounts/{account_sid}/Messages.json"

        data = {
            "To": message["to"],
            "From": message.get("from") or provider.get("default_sender_id") or "",
            "Body": message["content"],
        }

        try:
            logger.info(f"📤 Sending Twilio SMS to {message['to']}")

            async with httpx.AsyncClient() as client:
                response = await client.post(
                    url,
                    data=data,
                    auth=(account_sid, auth_token),
                    timeout=settings.PROVIDER_HTTP_TIMEOUT,
                )

            if response.status_code in [200, 201]:
                result = response.json()
                logger.info(f"✅ Message sent: SID={result.get('sid')}")
                return SendResult(success=True, message_id=result.get("sid"), raw=result)

            error_text = response.text
            logger.error(f"❌ Twilio API error: {response.status_code} - {error_text}")
            return SendResult(
                success=False,
                error=f"Twilio API error: {response.status_code}",
                retryable=response.status_code == 429 or response.status_code >= 500,
                raw={"status_code": response.status_code, "body": error_text},
            )

        except httpx.TimeoutException:
            logger.error("Twilio API timeout")
            return SendResult(success=False, error="Twilio API timeout", retryable=True)
        except httpx.HTTPError as e:
            logger.error(f"Error sending Twilio message: {e}")
            return SendResult(success=False, error=str(e), retryable=True)


# ==============================================
# MESSAGEBIRD
# ==============================================

class MessageBirdGateway(BaseGateway):
    provider_type = "messagebird"

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        access_key = provider.get("api_key")
        if not access_key:
            return SendResult(success=False, error="MessageBird access key missing", retryable=False)

        base_url = (provider.get("api_endpoint") or settings.MESSAGEBIRD_API_BASE_URL).rstrip("/")
        payload = {
            "originator": message.get("from") or provider.get("default_sender_id") or "",
            "recipients": [message["to"].lstrip("+")],
            "body": message["content"],
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{base_url}/messages",
                    json=payload,
                    headers={"Authorization": f"AccessKey {access_key}"},
                    timeout=settings.PROVIDER_HTTP_TIMEOUT,
                )

            if response.status_code in [200, 201]:
                result = response.json()
                return SendResult(success=True, message_id=result.get("id"), raw=result)

            logger.error(f"❌ MessageBird API error: {response.status_code} - {response.text}")
            return SendResult(
                success=False,
                error=f"MessageBird API error: {response.status_code}",
                retryable=response.status_code == 429 or response.status_code >= 500,
                raw={"status_code": response.status_code, "body": response.text},
            )

        except httpx.TimeoutException:
            return SendResult(success=False, error="MessageBird API timeout", retryable=True)
        except httpx.HTTPError as e:
            logger.error(f"Error sending MessageBird message: {e}")
            return SendResult(success=False, error=str(e), retryable=True)


# ==============================================
# SMSENVOI
# ==============================================

class SMSenvoiGateway(BaseGateway):
    """
    SMSenvoi REST API: login for user/session keys, then POST /sms.
    api_key = username, api_secret = password.
    """

    provider_type = "smsenvoi"

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        username = provider.get("api_key")
        password = provider.get("api_secret")
        if not username or not password:
            return SendResult(
                success=False,
                error="SMSenvoi credentials missing. Please configure username and password in provider settings.",
                retryable=False,
            )

        base_url = (provider.get("api_endpoint") or settings.SMSENVOI_API_BASE_URL).rstrip("/")

        try:
            async with httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT) as client:
                auth_response = await client.get(
                    f"{base_url}/login",
                    params={"username": username, "password": password},
                    headers={"Accept": "application/json"},
                )
                if auth_response.status_code != 200:
                    return SendResult(
                        success=False,
                        error=f"SMSenvoi authentication failed: {auth_response.status_code}",
                        retryable=True,
                    )

                parts = auth_response.text.strip().split(";")
                if len(parts) < 2 or not parts[0] or not parts[1]:
                    return SendResult(
                        success=False,
                        error="SMSenvoi authentication failed: Invalid response format",
                        retryable=True,
                    )
                user_key, session_key = parts[0], parts[1]

                payload = {
                    "message": message["content"],
                    "message_type": (provider.get("settings") or {}).get("message_type", "PRM"),
                    "recipient": [message["to"]],
                    "returnCredits": True,
                }
                if message.get("from"):
                    payload["sender"] = message["from"]

                logger.info(f"📤 SMSenvoi: Sending SMS to {message['to']}")
                sms_response = await client.post(
                    f"{base_url}/sms",
                    json=payload,
                    headers={
                        "Accept": "application/json",
                        "user_key": user_key,
                        "Session_key": session_key,
                    },
                )

            if sms_response.status_code >= 300:
                return SendResult(
                    success=False,
                    error=f"SMSenvoi SMS send failed: {sms_response.status_code} - {sms_response.text}",
                    retryable=True,
                )

            result = sms_response.json()
            if result.get("result") == "OK":
                return SendResult(
                    success=True,
                    message_id=result.get("order_id") or result.get("internal_order_id"),
                    raw=result,
                )

            return SendResult(
                success=False,
                error=f"SMSenvoi error: {result.get('result') or 'Unknown error'}",
                retryable=True,
                raw=result,
            )

        except httpx.HTTPError as e:
            logger.error(f"❌ SMSenvoi error: {e}")
            return SendResult(success=False, error=str(e) or "SMSenvoi API error", retryable=True)


class UnsupportedGateway(BaseGateway):
    """Fallback for provider types without an integration"""

    def __init__(self, provider_type: str):
        self.provider_type = provider_type

    async def send(self, provider: Dict[str, Any], message: Dict[str, Any]) -> SendResult:
        return SendResult(
            success=False,
            error=f"Provider integration not implemented: {self.provider_type}",
            retryable=False,
        )


# Singleton instances
simulation_gateway = SimulationGateway()

_GATEWAYS: Dict[str, BaseGateway] = {
    "simulation": simulation_gateway,
    "twilio": TwilioGateway(),
    "messagebird": MessageBirdGateway(),
    "smsenvoi": SMSenvoiGateway(),
}


def get_gateway(provider_type: Optional[str]) -> BaseGateway:
    """
    Returns the gateway for a provider type.
    Unknown types get a gateway that fails without retry.
    """
    return _GATEWAYS.get(provider_type or "", UnsupportedGateway(provider_type or "unknown"))


def register_gateway(provider_type: str, gateway: BaseGateway):
    """Registers or replaces a gateway (used by tests)."""
    _GATEWAYS[provider_type] = gateway
