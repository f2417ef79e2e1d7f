import json

import httpx
import pytest

from app.schemas.tenant import KommoConfig
from app.services.kommo_service import KommoClient
from app.services.payload_parser import FILE, IMAGE, Attachment
from app.services.retry import RetryPolicy

BASE = "https://alphacasino.kommo.com/api/v4"


class Recorder:
    """MockTransport handler that replays canned responses per (method, path)."""

    def __init__(self, routes=None, default=None):
        self.routes = routes or {}
        self.default = default or httpx.Response(404, json={"title": "Not found"})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return self.default
        if isinstance(route, list):
            result = route.pop(0)
        else:
            result = route
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def kommo_config():
    return KommoConfig(
        access_token="kommo-token",
        subdomain="alphacasino",
        whatsapp_scope_id="scope-1",
        retry_count_field_id=9001,
        tracking_id_field_id=9002,
        amount_field_id=9003,
        username_field_id=9004,
        password_field_id=9005,
    )


def make_client(config, recorder):
    return KommoClient(config, retry_policy=RetryPolicy(max_attempts=3, delay_seconds=0), transport=httpx.MockTransport(recorder))


def lead_body(status_id=101, pipeline_id=7001, fields=None):
    return {
        "id": 501,
        "status_id": status_id,
        "pipeline_id": pipeline_id,
        "custom_fields_values": [{"field_id": k, "values": [{"value": v}]} for k, v in (fields or {}).items()],
    }


class TestFetchLeadState:
    def test_reads_stage_and_counter(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(200, json=lead_body(fields={9001: "2", 9002: "AB12CD"}))})
        state = make_client(kommo_config, recorder).fetch_lead_state(501)

        assert state.status_id == 101
        assert state.pipeline_id == 7001
        assert state.retry_count == 2
        assert state.tracking_id == "AB12CD"
        assert recorder.requests[0].headers["Authorization"] == "Bearer kommo-token"

    def test_missing_counter_defaults_to_zero(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(200, json=lead_body())})
        assert make_client(kommo_config, recorder).fetch_lead_state(501).retry_count == 0

    def test_garbage_counter_defaults_to_zero(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(200, json=lead_body(fields={9001: "many"}))})
        assert make_client(kommo_config, recorder).fetch_lead_state(501).retry_count == 0

    def test_non_2xx_returns_none_without_retry(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(500, text="oops")})
        assert make_client(kommo_config, recorder).fetch_lead_state(501) is None
        assert len(recorder.requests) == 1

    def test_network_errors_retried_then_none(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): [httpx.ConnectError("down")] * 3})
        assert make_client(kommo_config, recorder).fetch_lead_state(501) is None
        assert len(recorder.requests) == 3

    def test_network_error_recovers(self, kommo_config):
        recorder = Recorder(
            {("GET", "/api/v4/leads/501"): [httpx.ConnectError("down"), httpx.Response(200, json=lead_body())]}
        )
        assert make_client(kommo_config, recorder).fetch_lead_state(501).status_id == 101

    def test_missing_credentials_skip_request(self):
        recorder = Recorder()
        client = make_client(KommoConfig(access_token="", subdomain="alphacasino"), recorder)
        assert client.fetch_lead_state(501) is None
        assert recorder.requests == []

    def test_fetch_pipeline_id(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(200, json=lead_body(pipeline_id=7002))})
        assert make_client(kommo_config, recorder).fetch_pipeline_id(501) == 7002


class TestWriteLeadState:
    def test_single_patch_with_stage_and_fields(self, kommo_config):
        recorder = Recorder({("PATCH", "/api/v4/leads/501"): httpx.Response(200, json={"id": 501})})
        ok = make_client(kommo_config, recorder).write_lead_state(
            501, stage_id=102, retry_count=0, tracking_id="AB12CD", amount=1500.0
        )

        assert ok is True
        assert len(recorder.requests) == 1
        body = json.loads(recorder.requests[0].content)
        assert body["status_id"] == 102
        assert {"field_id": 9001, "values": [{"value": 0}]} in body["custom_fields_values"]
        assert {"field_id": 9002, "values": [{"value": "AB12CD"}]} in body["custom_fields_values"]
        assert {"field_id": 9003, "values": [{"value": 1500.0}]} in body["custom_fields_values"]

    def test_counter_skipped_when_field_not_configured(self):
        config = KommoConfig(access_token="t", subdomain="alphacasino")
        recorder = Recorder({("PATCH", "/api/v4/leads/501"): httpx.Response(200, json={})})
        make_client(config, recorder).write_lead_state(501, stage_id=103, retry_count=2)
        assert json.loads(recorder.requests[0].content) == {"status_id": 103}

    def test_nothing_to_write(self):
        config = KommoConfig(access_token="t", subdomain="alphacasino")
        recorder = Recorder()
        assert make_client(config, recorder).write_lead_state(501, retry_count=2) is True
        assert recorder.requests == []

    def test_failure_returns_false(self, kommo_config):
        recorder = Recorder({("PATCH", "/api/v4/leads/501"): httpx.Response(400, json={"title": "Bad"})})
        assert make_client(kommo_config, recorder).write_lead_state(501, stage_id=102) is False


class TestFetchLastAttachment:
    def test_events_feed_first(self, kommo_config):
        events = {
            "_embedded": {
                "events": [
                    {"type": "lead_status_changed"},
                    {
                        "type": "incoming_chat_message",
                        "value_after": [{"message": {"media": "https://cdn/x.jpg", "file_name": "x.jpg", "type": "picture"}}],
                    },
                ]
            }
        }
        recorder = Recorder({("GET", "/api/v4/events"): httpx.Response(200, json=events)})
        attachment = make_client(kommo_config, recorder).fetch_last_attachment(501)

        assert attachment == Attachment(url="https://cdn/x.jpg", kind=IMAGE, name="x.jpg")
        assert recorder.requests[0].url.params["filter[entity_id]"] == "501"
        assert len(recorder.requests) == 1

    def test_notes_feed_fallback_with_file_uuid(self, kommo_config):
        notes = {"_embedded": {"notes": [{"params": {"text": "hi"}}, {"params": {"file_uuid": "abc-123", "file_name": "r.pdf"}}]}}
        recorder = Recorder(
            {
                ("GET", "/api/v4/events"): httpx.Response(204),
                ("GET", "/api/v4/leads/501/notes"): httpx.Response(200, json=notes),
            }
        )
        attachment = make_client(kommo_config, recorder).fetch_last_attachment(501)
        assert attachment == Attachment(url="https://alphacasino.kommo.com/download/abc-123", kind=FILE, name="r.pdf")

    def test_nothing_found(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/events"): httpx.Response(200, json={"_embedded": {"events": []}})})
        assert make_client(kommo_config, recorder).fetch_last_attachment(501) is None


class TestNotesAndMessages:
    def test_add_note(self, kommo_config):
        recorder = Recorder({("POST", "/api/v4/leads/notes"): httpx.Response(200, json={})})
        assert make_client(kommo_config, recorder).add_note(501, "Proof received") is True
        body = json.loads(recorder.requests[0].content)
        assert body == [{"entity_id": 501, "note_type": "common", "params": {"text": "Proof received"}}]

    def test_send_chat_message_with_scope(self, kommo_config):
        recorder = Recorder({("POST", "/api/v4/talks/messages"): httpx.Response(200, json={})})
        assert make_client(kommo_config, recorder).send_chat_message(501, "hola") is True
        body = json.loads(recorder.requests[0].content)
        assert body == {"conversation_id": 501, "message": {"text": "hola"}, "scope_id": "scope-1"}

    def test_note_not_resent_after_read_timeout(self, kommo_config):
        recorder = Recorder(
            {("POST", "/api/v4/leads/notes"): [httpx.ReadTimeout("slow"), httpx.Response(200, json={})]}
        )
        assert make_client(kommo_config, recorder).add_note(501, "Proof received") is False
        assert len(recorder.requests) == 1

    def test_message_resent_after_connect_error(self, kommo_config):
        recorder = Recorder(
            {("POST", "/api/v4/talks/messages"): [httpx.ConnectError("refused"), httpx.Response(200, json={})]}
        )
        assert make_client(kommo_config, recorder).send_chat_message(501, "hola") is True
        assert len(recorder.requests) == 2

    def test_patch_retried_after_read_timeout(self, kommo_config):
        recorder = Recorder(
            {("PATCH", "/api/v4/leads/501"): [httpx.ReadTimeout("slow"), httpx.Response(200, json={})]}
        )
        assert make_client(kommo_config, recorder).write_lead_state(501, stage_id=102, retry_count=0) is True
        assert len(recorder.requests) == 2

    def test_set_player_credentials(self, kommo_config):
        recorder = Recorder({("PATCH", "/api/v4/leads/501"): httpx.Response(200, json={})})
        assert make_client(kommo_config, recorder).set_player_credentials(501, "bet12345678", "pw") is True
        fields = json.loads(recorder.requests[0].content)["custom_fields_values"]
        assert [f["field_id"] for f in fields] == [9004, 9005]


class TestFetchContact:
    def test_reads_primary_contact(self, kommo_config):
        recorder = Recorder(
            {
                ("GET", "/api/v4/leads/501"): httpx.Response(200, json={"_embedded": {"contacts": [{"id": 33}]}}),
                ("GET", "/api/v4/contacts/33"): httpx.Response(
                    200,
                    json={
                        "name": "Juan",
                        "custom_fields_values": [
                            {"field_code": "PHONE", "values": [{"value": "+5491155550000"}]},
                            {"field_code": "EMAIL", "values": [{"value": "juan@test.com"}]},
                        ],
                    },
                ),
            }
        )
        hints = make_client(kommo_config, recorder).fetch_contact(501)
        assert (hints.name, hints.phone, hints.email) == ("Juan", "+5491155550000", "juan@test.com")
        assert recorder.requests[0].url.params["with"] == "contacts"

    def test_no_contacts(self, kommo_config):
        recorder = Recorder({("GET", "/api/v4/leads/501"): httpx.Response(200, json={"_embedded": {"contacts": []}})})
        hints = make_client(kommo_config, recorder).fetch_contact(501)
        assert hints.phone is None
