from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from app.dependencies import (
    get_attribution_factory,
    get_backend_factory,
    get_classifier,
    get_kommo_factory,
)
from app.main import app
from app.schemas.tenant import BackendConfig, KommoConfig, MetaConfig, StageMap, TenantConfig
from app.services.attribution_service import AttributionClient
from app.services.kommo_service import KommoClient, LeadState
from app.services.payload_parser import ContactHints
from app.services.player_service import BackendClient
from app.services.result import Result
from app.services.tenant_service import TenantRegistry, get_tenant_registry
from app.services.vision_service import AttachmentClassification, VisionClassifier

STAGES = StageMap(
    waiting_for_proof=101,
    proof_received=102,
    proof_rejected=103,
    no_response=104,
    manual_help=105,
    retry=106,
    transferred=107,
)


def make_tenant(client_id: str = "alpha", **overrides) -> TenantConfig:
    kommo = {
        "access_token": "kommo-token",
        "subdomain": "alphacasino",
        "stages": STAGES,
        "retry_count_field_id": 9001,
        "tracking_id_field_id": 9002,
        "amount_field_id": 9003,
        "username_field_id": 9004,
        "password_field_id": 9005,
        "max_retries": 3,
    }
    kommo.update(overrides.pop("kommo", {}))
    data = {"client_id": client_id, "name": client_id.title(), "kommo": KommoConfig(**kommo)}
    data.update(overrides)
    return TenantConfig(**data)


@pytest.fixture
def tenant():
    return make_tenant()


@pytest.fixture
def full_tenant():
    return make_tenant(
        backend=BackendConfig(api_url="https://backend.test/players", api_token="backend-token", skin_id="skin-1"),
        meta=MetaConfig(pixel_id="pixel-1", access_token="meta-token"),
    )


@pytest.fixture
def registry(full_tenant):
    return TenantRegistry({"alpha": full_tenant})


@pytest.fixture
def kommo_mock():
    """KommoClient double with a lead waiting for proof."""
    kommo = Mock(spec=KommoClient)
    kommo.fetch_lead_state.return_value = LeadState(lead_id=1, status_id=101, pipeline_id=None, retry_count=0)
    kommo.write_lead_state.return_value = True
    kommo.add_note.return_value = True
    kommo.fetch_last_attachment.return_value = None
    kommo.fetch_contact.return_value = ContactHints()
    kommo.set_player_credentials.return_value = True
    kommo.send_chat_message.return_value = True
    return kommo


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("ALPHA_KOMMO_TOKEN", "kommo-token")


@pytest.fixture
def tenant_factory():
    return make_tenant


@pytest.fixture
def classifier_mock():
    classifier = Mock(spec=VisionClassifier)
    classifier.classify.return_value = AttachmentClassification(True, "high", "transfer receipt", 1500.0)
    return classifier


@pytest.fixture
def attribution_mock():
    attribution = Mock(spec=AttributionClient)
    attribution.send_purchase_event.return_value = Result.success({"events_received": 1})
    attribution.send_lead_event.return_value = Result.success({"events_received": 1})
    return attribution


@pytest.fixture
def backend_mock():
    backend = Mock(spec=BackendClient)
    backend.create_player.return_value = {"id": 42}
    return backend


@pytest.fixture
def api(registry, kommo_mock, classifier_mock, attribution_mock, backend_mock):
    """TestClient with every external collaborator replaced by a mock."""
    app.dependency_overrides[get_tenant_registry] = lambda: registry
    app.dependency_overrides[get_kommo_factory] = lambda: lambda config: kommo_mock
    app.dependency_overrides[get_classifier] = lambda: classifier_mock
    app.dependency_overrides[get_attribution_factory] = lambda: lambda config: attribution_mock
    app.dependency_overrides[get_backend_factory] = lambda: lambda config: backend_mock
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
