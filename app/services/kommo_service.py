"""Thin Kommo REST v4 client: the lead is the only state this service keeps."""

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.schemas.tenant import KommoConfig
from app.services.payload_parser import FILE, Attachment, ContactHints, media_kind
from app.services.retry import CONNECT_ERRORS, TRANSIENT_ERRORS, RetryPolicy, call_with_retry

logger = get_logger("kommo_service")

IDEMPOTENT_METHODS = frozenset({"GET", "PATCH"})

FEED_LIMIT = 10


@dataclass(frozen=True)
class LeadState:
    lead_id: int
    status_id: Optional[int]
    pipeline_id: Optional[int]
    retry_count: int = 0
    tracking_id: Optional[str] = None
    custom_fields: dict[int, Any] = field(default_factory=dict, compare=False)


def _custom_field_values(lead: dict) -> dict[int, Any]:
    values = {}
    for item in lead.get("custom_fields_values") or []:
        field_id = item.get("field_id")
        field_values = item.get("values") or []
        if field_id is not None and field_values:
            values[int(field_id)] = field_values[0].get("value")
    return values


def _as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _field(field_id: int, value: Any) -> dict:
    return {"field_id": field_id, "values": [{"value": value}]}


class KommoClient:
    """Kommo API calls for one tenant. Failures return None/False, never raise."""

    def __init__(
        self,
        config: KommoConfig,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.base_url = f"https://{config.subdomain}.{settings.kommo_domain}/api/v4"
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.crm_retry_attempts,
            delay_seconds=settings.crm_retry_delay_seconds,
        )
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.config.access_token and self.config.subdomain)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> Optional[httpx.Response]:
        """Send one request. Non-2xx answers are not retried.

        GET and PATCH retry any transport error; POST only retries failures to connect.
        """
        if not self.configured:
            logger.warning(f"Kommo {operation} skipped: credentials missing")
            return None

        headers = {
            "Authorization": f"Bearer {self.config.access_token}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = call_with_retry(
                    lambda: client.request(method, f"{self.base_url}{path}", headers=headers, params=params, json=json),
                    self.retry_policy,
                    retry_on=TRANSIENT_ERRORS if method in IDEMPOTENT_METHODS else CONNECT_ERRORS,
                    operation=f"kommo.{operation}",
                )
        except httpx.HTTPError as e:
            logger.error(f"Kommo {operation} error: {e}")
            return None

        if not response.is_success:
            logger.warning(
                f"Kommo {operation} failed: {response.status_code}",
                extra={"context": {"status_code": response.status_code, "body": response.text[:500]}},
            )
            return None
        return response

    def _get_json(self, path: str, operation: str, params: Optional[dict] = None) -> Optional[dict]:
        response = self._request("GET", path, operation, params=params)
        # 204 is how Kommo says "empty feed"
        if response is None or response.status_code == 204 or not response.content:
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Kommo {operation} returned invalid JSON")
            return None
        return data if isinstance(data, dict) else None

    def fetch_lead_state(self, lead_id: int) -> Optional[LeadState]:
        lead = self._get_json(f"/leads/{lead_id}", "fetch_lead")
        if lead is None:
            return None

        custom_fields = _custom_field_values(lead)
        retry_count = 0
        if self.config.retry_count_field_id is not None:
            retry_count = _as_int(custom_fields.get(self.config.retry_count_field_id), 0)
        tracking_id = None
        if self.config.tracking_id_field_id is not None:
            tracking_id = custom_fields.get(self.config.tracking_id_field_id) or None

        return LeadState(
            lead_id=lead_id,
            status_id=_as_int(lead.get("status_id")),
            pipeline_id=_as_int(lead.get("pipeline_id")),
            retry_count=max(retry_count, 0),
            tracking_id=tracking_id,
            custom_fields=custom_fields,
        )

    def fetch_pipeline_id(self, lead_id: int) -> Optional[int]:
        lead = self._get_json(f"/leads/{lead_id}", "fetch_pipeline")
        if lead is None:
            return None
        return _as_int(lead.get("pipeline_id"))

    def write_lead_state(
        self,
        lead_id: int,
        stage_id: Optional[int] = None,
        retry_count: Optional[int] = None,
        tracking_id: Optional[str] = None,
        amount: Optional[float] = None,
    ) -> bool:
        """Apply stage and custom-field changes in a single PATCH."""
        custom_fields = []
        if retry_count is not None and self.config.retry_count_field_id is not None:
            custom_fields.append(_field(self.config.retry_count_field_id, retry_count))
        if tracking_id and self.config.tracking_id_field_id is not None:
            custom_fields.append(_field(self.config.tracking_id_field_id, tracking_id))
        if amount is not None and self.config.amount_field_id is not None:
            custom_fields.append(_field(self.config.amount_field_id, amount))

        body: dict[str, Any] = {}
        if stage_id is not None:
            body["status_id"] = stage_id
        if custom_fields:
            body["custom_fields_values"] = custom_fields
        if not body:
            logger.info("Nothing to write", extra={"context": {"lead_id": lead_id}})
            return True

        response = self._request("PATCH", f"/leads/{lead_id}", "write_lead", json=body)
        if response is None:
            return False
        logger.info(
            "Lead updated",
            extra={"context": {"lead_id": lead_id, "stage_id": stage_id, "retry_count": retry_count}},
        )
        return True

    def set_player_credentials(self, lead_id: int, username: str, password: str) -> bool:
        custom_fields = []
        if self.config.username_field_id is not None:
            custom_fields.append(_field(self.config.username_field_id, username))
        if self.config.password_field_id is not None:
            custom_fields.append(_field(self.config.password_field_id, password))
        if not custom_fields:
            logger.warning("Credential fields not configured", extra={"context": {"lead_id": lead_id}})
            return False

        response = self._request(
            "PATCH", f"/leads/{lead_id}", "set_credentials", json={"custom_fields_values": custom_fields}
        )
        return response is not None

    def fetch_last_attachment(self, lead_id: int) -> Optional[Attachment]:
        """Most recent attachment on the lead: events feed first, then notes."""
        events = self._get_json(
            "/events",
            "fetch_events",
            params={"filter[entity]": "lead", "filter[entity_id]": lead_id, "limit": FEED_LIMIT},
        )
        for event in ((events or {}).get("_embedded") or {}).get("events") or []:
            if event.get("type") != "incoming_chat_message" or not event.get("value_after"):
                continue
            message = (event["value_after"][0] or {}).get("message") or {}
            if message.get("media"):
                return Attachment(
                    url=str(message["media"]),
                    kind=media_kind(message.get("type") or FILE),
                    name=str(message.get("file_name") or "attachment"),
                )

        notes = self._get_json(f"/leads/{lead_id}/notes", "fetch_notes", params={"limit": FEED_LIMIT})
        for note in ((notes or {}).get("_embedded") or {}).get("notes") or []:
            params = note.get("params") or {}
            if params.get("link"):
                url = str(params["link"])
            elif params.get("file_uuid"):
                url = f"https://{self.config.subdomain}.{settings.kommo_domain}/download/{params['file_uuid']}"
            else:
                continue
            return Attachment(url=url, kind=FILE, name=str(params.get("file_name") or "attachment"))

        logger.info("No attachment found in lead feeds", extra={"context": {"lead_id": lead_id}})
        return None

    def add_note(self, lead_id: int, text: str) -> bool:
        body = [{"entity_id": lead_id, "note_type": "common", "params": {"text": text}}]
        return self._request("POST", "/leads/notes", "add_note", json=body) is not None

    def fetch_contact(self, lead_id: int) -> ContactHints:
        """Name, phone and email of the lead's primary contact (empty hints on failure)."""
        lead = self._get_json(f"/leads/{lead_id}", "fetch_lead_contacts", params={"with": "contacts"})
        contacts = ((lead or {}).get("_embedded") or {}).get("contacts") or []
        if not contacts or contacts[0].get("id") is None:
            return ContactHints()

        contact = self._get_json(f"/contacts/{contacts[0]['id']}", "fetch_contact")
        if contact is None:
            return ContactHints()

        values = {}
        for item in contact.get("custom_fields_values") or []:
            code = item.get("field_code")
            field_values = item.get("values") or []
            if code in ("PHONE", "EMAIL") and field_values and code not in values:
                values[code] = field_values[0].get("value")
        return ContactHints(email=values.get("EMAIL"), phone=values.get("PHONE"), name=contact.get("name"))

    def send_chat_message(self, lead_id: int, text: str) -> bool:
        body: dict[str, Any] = {"conversation_id": lead_id, "message": {"text": text}}
        if self.config.whatsapp_scope_id:
            body["scope_id"] = self.config.whatsapp_scope_id
        else:
            logger.warning("whatsapp_scope_id not configured", extra={"context": {"lead_id": lead_id}})
        return self._request("POST", "/talks/messages", "send_message", json=body) is not None


def create_kommo_client(config: KommoConfig) -> KommoClient:
    return KommoClient(config)
