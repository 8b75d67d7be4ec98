"""Typed webhook envelope.

The provider posts loosely-typed JSON; it is validated into these models
before any lifecycle logic looks at it.
"""

import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tablecall.errors import MalformedPayload
from tablecall.statuses import ProviderEvent


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TranscriptWord(_Lenient):
    word: str = ""
    start: float | None = None
    end: float | None = None

    @field_validator("word", mode="before")
    @classmethod
    def null_word_as_empty(cls, value):
        return "" if value is None else value


class TranscriptTurn(_Lenient):
    role: str | None = None
    speaker: str | None = None
    content: str = ""
    words: list[TranscriptWord] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def null_content_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("words", mode="before")
    @classmethod
    def null_words_as_empty(cls, value):
        return [] if value is None else value

    @property
    def speaker_role(self) -> str:
        return self.role or self.speaker or "unknown"

    @property
    def start_seconds(self) -> float | None:
        if self.words:
            return self.words[0].start
        return None


class CallAnalysis(_Lenient):
    in_voicemail: bool | None = None
    call_successful: bool | None = None


class CallPayload(_Lenient):
    call_id: str | None = None
    transcript: str | None = None
    transcript_object: list[TranscriptTurn] | None = None
    disconnection_reason: str | None = None
    duration_ms: int | None = None
    call_analysis: CallAnalysis | None = None

    @property
    def has_transcript(self) -> bool:
        return bool((self.transcript and self.transcript.strip()) or self.transcript_object)


class WebhookEnvelope(_Lenient):
    event: str
    call: CallPayload | None = None

    @property
    def provider_event(self) -> ProviderEvent | None:
        return ProviderEvent.parse(self.event)

    @property
    def provider_call_id(self) -> str | None:
        if self.call is None:
            return None
        return self.call.call_id or None


def parse_envelope(raw_body: bytes | str) -> tuple[WebhookEnvelope, dict]:
    """Parse a verified body into (envelope, raw dict).

    The raw dict is kept for the audit artifact. Raises MalformedPayload on
    invalid JSON or a body that does not fit the envelope.
    """
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPayload("payload must be a JSON object")
    try:
        envelope = WebhookEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedPayload(f"unexpected payload shape: {e.error_count()} error(s)") from e
    return envelope, data
