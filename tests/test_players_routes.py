from app.main import app
from app.services.player_service import BackendError
from app.services.tenant_service import TenantRegistry, get_tenant_registry

URL = "/api/alpha/create-player-from-kommo"
LEAD_ADDED = {
    "leads[add][0][id]": "7",
    "contacts[add][0][email]": "ana@example.com",
    "contacts[add][0][phone]": "+54 11 5555",
    "contacts[add][0][name]": "Ana",
}


class TestCreatePlayer:
    def test_creates_player(self, api, kommo_mock, backend_mock):
        response = api.post(URL, data=LEAD_ADDED)

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["data"]["lead_id"] == 7
        assert body["data"]["player"] == {"id": 42}
        backend_mock.create_player.assert_called_once()
        kommo_mock.set_player_credentials.assert_called_once()
        kommo_mock.fetch_contact.assert_not_called()

    def test_password_not_echoed(self, api, backend_mock):
        body = api.post(URL, data=LEAD_ADDED).json()
        password = backend_mock.create_player.call_args[0][1]
        assert password not in str(body)

    def test_backend_failure(self, api, kommo_mock, backend_mock):
        backend_mock.create_player.side_effect = BackendError("Backend error: 500")

        body = api.post(URL, data=LEAD_ADDED).json()

        assert body["success"] is False
        assert body["error"] == "Backend error: 500"
        kommo_mock.write_lead_state.assert_called_once_with(7, stage_id=106)

    def test_missing_lead_id(self, api, backend_mock):
        body = api.post(URL, data={"contacts[add][0][name]": "Ana"}).json()
        assert body["success"] is False
        backend_mock.create_player.assert_not_called()

    def test_backend_not_configured(self, api, tenant):
        app.dependency_overrides[get_tenant_registry] = lambda: TenantRegistry({"alpha": tenant})
        response = api.post(URL, data=LEAD_ADDED)
        assert response.status_code == 400
        assert response.json()["details"] == ["Backend config is missing"]

    def test_status(self, api, tenant):
        assert api.get(URL).json()["status"] == "ok"
        app.dependency_overrides[get_tenant_registry] = lambda: TenantRegistry({"alpha": tenant})
        assert api.get(URL).json()["extra"]["missing"] == ["Backend config is missing"]


class TestUnhandledErrors:
    def test_unexpected_exception_returns_500(self, api, kommo_mock, monkeypatch):
        alerts = []
        monkeypatch.setattr("app.main.alert_error", lambda message, context=None: alerts.append(context))
        kommo_mock.fetch_contact.side_effect = RuntimeError("boom")

        response = api.post(URL, data={"leads[add][0][id]": "7"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}
        assert alerts[0]["path"] == URL
