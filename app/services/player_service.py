"""Gaming-account provisioning for leads coming out of the CRM."""

import random
import string
from dataclasses import dataclass, field
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import LoggerAdapter, get_logger
from app.schemas.tenant import BackendConfig, ProxyConfig, TenantConfig
from app.services.alert_service import alert_error
from app.services.attribution_service import AttributionClient
from app.services.kommo_service import KommoClient
from app.services.payload_parser import ContactHints
from app.services.retry import RetryPolicy, call_with_retry

logger = get_logger("player_service")

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
)

PASSWORD_LENGTH = 10


class BackendError(Exception):
    pass


def generate_username(prefix: str, digits: int, rng: random.Random) -> str:
    return f"{prefix}{rng.randint(10 ** (digits - 1), 10**digits - 1)}"


def generate_password(rng: random.Random, length: int = PASSWORD_LENGTH) -> str:
    """Letters and digits, at least one of each."""
    alphabet = string.ascii_letters + string.digits
    while True:
        password = "".join(rng.choice(alphabet) for _ in range(length))
        if any(c.isdigit() for c in password) and any(c.isalpha() for c in password):
            return password


def credentials_message(username: str, password: str, login_url: Optional[str] = None) -> str:
    text = f"🎰 ¡Cuenta creada exitosamente!\n\nUsuario: {username}\nContraseña: {password}"
    if login_url:
        text += f"\n\nPodés iniciar sesión en: {login_url}"
    return text


class BackendClient:
    """Player-creation endpoint, optionally reached through a rotating residential proxy."""

    def __init__(
        self,
        config: BackendConfig,
        proxy: Optional[ProxyConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.proxy = proxy
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.backend_retry_attempts,
            delay_seconds=settings.backend_retry_delay_seconds,
        )
        self.timeout = timeout if timeout is not None else 30.0
        self.rng = rng or random.SystemRandom()

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json-patch+json",
            "Authorization": f"Bearer {self.config.api_token}",
            "User-Agent": self.rng.choice(USER_AGENTS),
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "es-AR,es;q=0.9,en;q=0.8",
        }
        if self.config.origin:
            headers["Origin"] = self.config.origin
            headers["Referer"] = f"{self.config.origin.rstrip('/')}/"
        return headers

    def _post_once(self, body: dict) -> dict:
        client_kwargs = {"timeout": self.timeout}
        if self.proxy is not None:
            # proxy certificate does not match the backend host
            client_kwargs["proxy"] = self.proxy.url
            client_kwargs["verify"] = False

        with httpx.Client(**client_kwargs) as client:
            response = client.post(self.config.api_url, json=body, headers=self._headers())

        if "text/html" in response.headers.get("content-type", ""):
            raise BackendError("Backend returned HTML - IP might be blocked")
        if response.status_code not in (200, 201):
            raise BackendError(f"Backend error: {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text[:500]}
        return data if isinstance(data, dict) else {"data": data}

    def create_player(self, username: str, password: str) -> dict:
        """Raises BackendError or httpx.HTTPError once every attempt has failed."""
        body = {
            "userName": username,
            "password": password,
            "skinId": self.config.skin_id,
            "agentId": None,
            "language": "es",
        }
        return call_with_retry(
            lambda: self._post_once(body),
            self.retry_policy,
            retry_on=(BackendError, httpx.HTTPError),
            operation="backend.create_player",
        )


@dataclass
class ProvisioningOutcome:
    success: bool
    message: str
    data: dict = field(default_factory=dict)
    error: Optional[str] = None


class PlayerService:
    def __init__(
        self,
        config: TenantConfig,
        kommo: KommoClient,
        backend: BackendClient,
        attribution: Optional[AttributionClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.kommo = kommo
        self.backend = backend
        self.attribution = attribution
        self.rng = rng or random.SystemRandom()

    def _complete_hints(self, lead_id: int, hints: ContactHints) -> ContactHints:
        if hints.complete:
            return hints
        fetched = self.kommo.fetch_contact(lead_id)
        return ContactHints(
            email=hints.email or fetched.email,
            phone=hints.phone or fetched.phone,
            name=hints.name or fetched.name,
        )

    def provision(self, lead_id: int, hints: Optional[ContactHints] = None) -> ProvisioningOutcome:
        log = LoggerAdapter(logger, {"client_id": self.config.client_id, "lead_id": lead_id})
        hints = self._complete_hints(lead_id, hints or ContactHints())
        backend_config = self.config.backend
        username = generate_username(backend_config.username_prefix, backend_config.username_digits, self.rng)
        password = generate_password(self.rng)
        log = log.bind(username=username)

        try:
            player = self.backend.create_player(username, password)
        except (BackendError, httpx.HTTPError) as e:
            log.error(f"Player creation failed: {e}")
            retry_stage = self.config.kommo.stages.retry
            moved = False
            if retry_stage is not None:
                moved = self.kommo.write_lead_state(lead_id, stage_id=retry_stage)
            alert_error(
                "Player creation failed",
                {"client": self.config.client_id, "lead_id": lead_id, "error": str(e), "moved_to_retry": moved},
            )
            return ProvisioningOutcome(
                False,
                "Player creation failed",
                {"lead_id": lead_id, "moved_to_retry": moved},
                str(e),
            )

        log.info("Player created")
        fields_updated = self.kommo.set_player_credentials(lead_id, username, password)

        text = credentials_message(username, password, backend_config.login_url)
        message_sent = self.kommo.send_chat_message(lead_id, text)
        if not message_sent:
            log.warning("Chat delivery failed, leaving credentials in a note")
            self.kommo.add_note(lead_id, text)

        lead_event_sent = False
        if self.attribution is not None:
            state = self.kommo.fetch_lead_state(lead_id)
            if state is not None and state.tracking_id:
                lead_event_sent = self.attribution.send_lead_event(
                    state.tracking_id, phone=hints.phone, email=hints.email
                ).ok

        return ProvisioningOutcome(
            True,
            "Player created successfully",
            {
                "lead_id": lead_id,
                "username": username,
                "player": player,
                "custom_fields_updated": fields_updated,
                "message_sent": message_sent,
                "lead_event_sent": lead_event_sent,
            },
        )
