"""Ad-attribution reporting through the Meta Conversions API.

Leads arrive from ads with a short tracking id embedded in their first
message as ``[REF:xxx]``. The id is stored on the lead and later sent back,
hashed, as ``external_id`` so the conversion can be matched to the click.
"""

import hashlib
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.schemas.tenant import MetaConfig, TenantConfig
from app.services.kommo_service import KommoClient
from app.services.result import Result
from app.services.retry import RetryPolicy, call_with_retry

logger = get_logger("attribution_service")

TRACKING_ID = re.compile(r"\[REF:([^\]]+)\]")
PHONE_NOISE = re.compile(r"[\s\-+]")


def extract_tracking_id(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = TRACKING_ID.search(text)
    if not match:
        return None
    return match.group(1).strip() or None


def hash_value(value: str) -> str:
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def normalize_phone(phone: str) -> str:
    return PHONE_NOISE.sub("", phone)


class AttributionClient:
    """Fire-and-forget conversion events for one pixel. Never raises."""

    def __init__(
        self,
        config: MetaConfig,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.url = f"https://graph.facebook.com/{settings.meta_graph_version}/{config.pixel_id}/events"
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.attribution_retry_attempts,
            delay_seconds=settings.attribution_retry_delay_seconds,
        )
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport
        self.clock = clock

    def _user_data(self, tracking_id: str, phone: Optional[str] = None, email: Optional[str] = None) -> dict:
        user_data: dict[str, Any] = {"external_id": [hash_value(tracking_id)]}
        if phone:
            user_data["ph"] = [hash_value(normalize_phone(phone))]
        if email:
            user_data["em"] = [hash_value(email)]
        return user_data

    def _event(self, event_name: str, user_data: dict, custom_data: Optional[dict] = None) -> dict:
        event_time = int(self.clock())
        event = {
            "event_name": event_name,
            "event_time": event_time,
            "event_id": f"{event_name.lower()}_{event_time}_{uuid.uuid4().hex[:9]}",
            "action_source": "website",
            "user_data": user_data,
        }
        if custom_data:
            event["custom_data"] = custom_data
        return event

    def send_event(self, event: dict) -> Result[dict]:
        body: dict[str, Any] = {"data": [event], "access_token": self.config.access_token}
        if self.config.test_event_code:
            body["test_event_code"] = self.config.test_event_code

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                # Graph API deduplicates on event_id
                response = call_with_retry(
                    lambda: client.post(self.url, json=body),
                    self.retry_policy,
                    operation="attribution.send_event",
                )
        except httpx.HTTPError as e:
            logger.error(f"Conversion event request failed: {e}")
            return Result.failure(str(e), "request_failed")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            error = ((data or {}).get("error") or {}).get("message") or f"HTTP {response.status_code}"
            logger.warning(
                f"Conversion event rejected: {error}",
                extra={"context": {"event_name": event.get("event_name"), "status_code": response.status_code}},
            )
            return Result.failure(error, "rejected")

        logger.info(
            "Conversion event sent",
            extra={"context": {"event_name": event.get("event_name"), "event_id": event.get("event_id")}},
        )
        return Result.success(data)

    def send_purchase_event(self, tracking_id: str, value: float, phone: Optional[str] = None) -> Result[dict]:
        event = self._event(
            self.config.event_name,
            self._user_data(tracking_id, phone=phone),
            {"currency": self.config.currency, "value": value},
        )
        return self.send_event(event)

    def send_lead_event(
        self, tracking_id: str, phone: Optional[str] = None, email: Optional[str] = None
    ) -> Result[dict]:
        return self.send_event(self._event("Lead", self._user_data(tracking_id, phone=phone, email=email)))


@dataclass
class ConversionOutcome:
    success: bool
    message: str
    data: dict = field(default_factory=dict)
    error: Optional[str] = None


def _amount(value: Any) -> Optional[float]:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return amount or None


def report_purchase(
    config: TenantConfig,
    kommo: KommoClient,
    attribution: AttributionClient,
    lead_id: int,
) -> ConversionOutcome:
    """Send a purchase event for a lead that reached the transferred stage."""
    state = kommo.fetch_lead_state(lead_id)
    if state is None:
        return ConversionOutcome(False, "Could not fetch lead data", {"lead_id": lead_id}, "lead_fetch_failed")

    transferred = config.kommo.stages.transferred
    if transferred is not None and state.status_id != transferred:
        return ConversionOutcome(
            True,
            "Lead not in transferred stage - conversion not sent",
            {"lead_id": lead_id, "current_status": state.status_id},
        )

    if not state.tracking_id:
        return ConversionOutcome(True, "No tracking id found - conversion not tracked", {"lead_id": lead_id})

    amount = None
    if config.kommo.amount_field_id is not None:
        amount = _amount(state.custom_fields.get(config.kommo.amount_field_id))
    phone = kommo.fetch_contact(lead_id).phone

    result = attribution.send_purchase_event(state.tracking_id, amount or 0, phone=phone)
    if not result.ok:
        return ConversionOutcome(False, "Conversion not sent", {"lead_id": lead_id}, result.error)

    return ConversionOutcome(
        True,
        "Conversion sent",
        {"lead_id": lead_id, "tracking_id": state.tracking_id, "amount": amount, "has_phone": bool(phone)},
    )


def create_attribution_client(config: MetaConfig) -> AttributionClient:
    return AttributionClient(config)
