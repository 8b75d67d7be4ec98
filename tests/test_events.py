import pytest
from tablecall.errors import MalformedPayload
from tablecall.events import parse_envelope
from tablecall.statuses import ProviderEvent

from conftest import TWO_PARTY_TURNS, webhook_body


class TestParseEnvelope:
    def test_known_event(self):
        envelope, raw = parse_envelope(webhook_body("call_ended", call_id="prov_1", duration_ms=1200))
        assert envelope.provider_event == ProviderEvent.CALL_ENDED
        assert envelope.provider_call_id == "prov_1"
        assert envelope.call.duration_ms == 1200
        assert raw["call"]["call_id"] == "prov_1"

    def test_unknown_event_still_parses(self):
        envelope, _ = parse_envelope(webhook_body("transcript_updated", call_id="prov_1"))
        assert envelope.event == "transcript_updated"
        assert envelope.provider_event is None

    def test_extra_fields_ignored(self):
        envelope, raw = parse_envelope(webhook_body("call_started", call_id="prov_1", agent_id="ag_1"))
        assert not hasattr(envelope.call, "agent_id")
        assert raw["call"]["agent_id"] == "ag_1"

    def test_structured_transcript(self):
        envelope, _ = parse_envelope(webhook_body("call_analyzed", call_id="prov_1", transcript_object=TWO_PARTY_TURNS))
        turn = envelope.call.transcript_object[1]
        assert turn.speaker_role == "user"
        assert turn.start_seconds == 3.1
        assert envelope.call.has_transcript

    def test_null_turn_content_is_empty(self):
        turns = [{"role": "agent", "content": None, "words": None}, {"role": "user", "content": "hi"}]
        envelope, _ = parse_envelope(webhook_body("call_ended", call_id="prov_1", transcript_object=turns))
        assert envelope.call.transcript_object[0].content == ""
        assert envelope.call.transcript_object[0].words == []
        assert envelope.call.transcript_object[1].content == "hi"

    def test_null_word_is_empty(self):
        turns = [{"role": "user", "content": "hi", "words": [{"word": None, "start": 1.2}]}]
        envelope, _ = parse_envelope(webhook_body("call_ended", call_id="prov_1", transcript_object=turns))
        assert envelope.call.transcript_object[0].words[0].word == ""
        assert envelope.call.transcript_object[0].start_seconds == 1.2

    def test_blank_transcript_is_not_a_transcript(self):
        envelope, _ = parse_envelope(webhook_body("call_ended", call_id="prov_1", transcript="   "))
        assert not envelope.call.has_transcript

    def test_missing_call_object(self):
        envelope, _ = parse_envelope(b'{"event": "call_ended"}')
        assert envelope.provider_call_id is None

    def test_empty_call_id(self):
        envelope, _ = parse_envelope(webhook_body("call_ended", call_id=""))
        assert envelope.provider_call_id is None

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2, 3]",
        b'{"call": {"call_id": "prov_1"}}',
        b'{"event": "call_ended", "call": "prov_1"}',
        b'{"event": "call_ended", "call": {"duration_ms": "long"}}',
    ])
    def test_malformed(self, body):
        with pytest.raises(MalformedPayload):
            parse_envelope(body)
