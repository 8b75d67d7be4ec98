import json
from unittest.mock import MagicMock

import pytest

from tablecall.config import Settings
from tablecall.extraction import ExtractionClient, ExtractionOrchestrator
from tablecall.models import Call
from tablecall.statuses import CallIntent, CallStatus
from tablecall.store import InMemoryCallStore
from tablecall.verification import WebhookVerifier
from tablecall.webhook import WebhookService

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
VALID_SIGNATURE = "v=1700000000,d=valid"


def openai_reply(payload: dict | str) -> dict:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return {"choices": [{"message": {"content": content}}]}


def webhook_body(event: str, **call_fields) -> bytes:
    return json.dumps({"event": event, "call": call_fields}).encode()


TWO_PARTY_TURNS = [
    {"role": "agent", "content": "Hi, I'd like to book a table for four tonight.", "words": [{"word": "Hi", "start": 0.4}]},
    {"role": "user", "content": "Sure, what time were you thinking?", "words": [{"word": "Sure", "start": 3.1}]},
    {"role": "agent", "content": "Seven o'clock, under the name Priya.", "words": [{"word": "Seven", "start": 5.0}]},
    {"role": "user", "content": "You're booked for seven, confirmation 4411.", "words": [{"word": "You're", "start": 8.2}]},
]


@pytest.fixture
def settings():
    return Settings(
        webhook_secret="test-webhook-key",
        openai_api_key="test-key",
        extraction_timeout=5.0,
        default_timezone="UTC",
    )


@pytest.fixture
def store():
    return InMemoryCallStore()


@pytest.fixture
def retell_client():
    client = MagicMock()
    client.verify.side_effect = lambda body, api_key, signature: signature == VALID_SIGNATURE
    return client


@pytest.fixture
def verifier(retell_client):
    return WebhookVerifier("test-webhook-key", client=retell_client)


@pytest.fixture
def extraction_client():
    return ExtractionClient(api_key="test-key", timeout=5.0)


@pytest.fixture
def orchestrator(store, extraction_client):
    return ExtractionOrchestrator(store, extraction_client, default_timezone="UTC")


@pytest.fixture
def service(verifier, store, orchestrator, settings):
    return WebhookService(verifier, store, orchestrator, settings)


@pytest.fixture
def reservation_call(store):
    call = Call(
        id="call-res-1",
        provider_call_id="prov_res_1",
        status=CallStatus.CALLING,
        call_intent=CallIntent.MAKE_RESERVATION,
        reservation_status="requested",
        restaurant_name="Bar Isabel",
        reservation_name="Priya",
        reservation_phone_e164="+16475550000",
        reservation_datetime_local_iso="2026-01-26T19:00:00",
        reservation_timezone="America/Toronto",
        reservation_party_size=4,
        questions_json={
            "presets": {"wait_time_now": {"enabled": True}},
            "custom_questions": ["Is there a patio?"],
        },
    )
    store.add_call(call)
    return call


@pytest.fixture
def questions_call(store):
    call = Call(
        id="call-q-1",
        provider_call_id="prov_q_1",
        status=CallStatus.CALLING,
        call_intent=CallIntent.QUESTIONS_ONLY,
        questions_json={"presets": {"hours_today": {"enabled": True}}, "custom_questions": []},
    )
    store.add_call(call)
    return call
