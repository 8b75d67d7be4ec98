import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tablecall.datetimes import normalize_local_datetime
from tablecall.errors import ExtractionError, StorageError
from tablecall.events import TranscriptTurn
from tablecall.models import Call, CallArtifact
from tablecall.questions import questions_asked
from tablecall.statuses import CallStatus
from tablecall.store import CallStore
from tablecall.transcript import format_transcript

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You extract structured data from restaurant phone call transcripts. "
    "Output ONLY valid JSON matching the schema, no prose."
)

ANSWER_SCHEMA = (
    '[{"question": "...", "answer": "...", "details": "...", "confidence": 0.0-1.0, '
    '"needs_followup": bool, "source_snippet": "..."}]'
)

RESERVATION_SCHEMA = f"""OUTPUT JSON SCHEMA:
{{
  "reservation": {{
    "status": "confirmed" | "failed" | "needs_followup",
    "details": "summary string",
    "confirmed_datetime_local_iso": "ISO string or null",
    "timezone": "IANA timezone or null",
    "party_size": number or null,
    "name": "string or null",
    "callback_phone_e164": "E.164 string or null",
    "confirmation_number": "string or null",
    "failure_reason": "string or null (why reservation failed)",
    "failure_category": "no_reservations|fully_booked|online_only|needs_credit_card|call_back_later|unclear|other or null"
  }},
  "answers": {ANSWER_SCHEMA},
  "overall_notes": "string"
}}"""

QUESTIONS_ONLY_SCHEMA = f"""OUTPUT JSON SCHEMA (no reservation object since this is questions-only):
{{
  "answers": {ANSWER_SCHEMA},
  "overall_notes": "string"
}}"""


# --- Output contract ---

class ReservationOutcome(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Literal["confirmed", "failed", "needs_followup"]
    details: str | None = None
    confirmed_datetime_local_iso: str | None = None
    timezone: str | None = None
    party_size: int | None = None
    name: str | None = None
    callback_phone_e164: str | None = None
    confirmation_number: str | None = None
    failure_reason: str | None = None
    failure_category: str | None = None


class AnswerItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question: str
    answer: str | None = None
    details: str | None = None
    confidence: float | None = None
    needs_followup: bool = False
    source_snippet: str | None = None


class ExtractionOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reservation: ReservationOutcome | None = None
    answers: list[AnswerItem] = Field(default_factory=list)
    overall_notes: str | None = None


def parse_extraction_output(content: str | None, is_reservation: bool) -> dict:
    """Validate the model's JSON and return it in stored form.

    Raises ExtractionError for empty output, invalid JSON, or a shape that
    does not fit the intent's schema.
    """
    if not content or not content.strip():
        raise ExtractionError("extraction service returned empty output")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"extraction output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionError("extraction output is not a JSON object")
    if data.get("answers") is None:
        data["answers"] = []
    try:
        output = ExtractionOutput.model_validate(data)
    except ValidationError as e:
        raise ExtractionError(f"extraction output has unexpected shape: {e}") from e

    if is_reservation and output.reservation is None:
        raise ExtractionError("extraction output is missing the reservation object")

    result = {
        "answers": [item.model_dump() for item in output.answers],
        "overall_notes": output.overall_notes or "",
    }
    if is_reservation:
        result["reservation"] = output.reservation.model_dump()
    return result


def build_user_prompt(call: Call, transcript: str) -> str:
    lines = ["Extract information from this restaurant call transcript.", ""]

    if call.is_reservation:
        lines += [
            "CALL INTENT: Make a reservation",
            "RESERVATION REQUEST:",
            f"- Name: {call.reservation_name or 'unknown'}",
            f"- Party size: {call.reservation_party_size or 'unknown'}",
            f"- Requested time: {call.reservation_datetime_local_iso or 'unknown'}",
            f"- Timezone: {call.reservation_timezone or 'unknown'}",
            f"- Callback: {call.reservation_phone_e164 or 'unknown'}",
            "",
        ]
    else:
        lines += ["CALL INTENT: Questions only (no reservation)", ""]

    asked = questions_asked(call.questions_json)
    if asked:
        lines.append("EXTRA QUESTIONS ASKED:")
        lines += [f"{i}. {q}" for i, q in enumerate(asked, start=1)]
        lines.append("")

    lines += ["TRANSCRIPT:", transcript, ""]
    lines.append(RESERVATION_SCHEMA if call.is_reservation else QUESTIONS_ONLY_SCHEMA)
    return "\n".join(lines)


class ExtractionClient:
    """OpenAI chat-completions client in JSON-object response mode."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.timeout = timeout
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def complete_json(self, system: str, user: str) -> str:
        try:
            resp = await asyncio.wait_for(
                self._client.post(
                    "/chat/completions",
                    json={
                        "model": self.model,
                        "temperature": 0.1,
                        "max_tokens": 1500,
                        "response_format": {"type": "json_object"},
                        "messages": [
                            {"role": "system", "content": system},
                            {"role": "user", "content": user},
                        ],
                    },
                ),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["choices"][0]["message"]["content"] or ""
        except asyncio.TimeoutError as e:
            raise ExtractionError(f"extraction timed out after {self.timeout:.0f}s") from e
        except httpx.TimeoutException as e:
            raise ExtractionError(f"extraction timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ExtractionError(
                f"extraction service returned {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionError(f"extraction request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ExtractionError(f"unexpected extraction response: {e}") from e


@dataclass
class ExtractionOutcome:
    kind: Literal["succeeded", "skipped", "failed", "transcript_missing"]
    answers: dict | None = None
    error: str | None = None

    @property
    def reservation(self) -> dict | None:
        if self.answers is None:
            return None
        return self.answers.get("reservation")


class ExtractionOrchestrator:
    """Turns a stored transcript into answers and writes them back.

    extract() does the slow part and touches no state; persist() commits the
    outcome only while the caller's extraction lease is still current.
    """

    def __init__(self, store: CallStore, client: ExtractionClient, default_timezone: str = "UTC"):
        self.store = store
        self.client = client
        self.default_timezone = default_timezone

    async def extract(self, call: Call, artifact: CallArtifact | None, force: bool = False) -> ExtractionOutcome:
        if artifact is not None and artifact.answers_json and not force:
            logger.info("Answers already stored for call %s, skipping extraction", call.id)
            return ExtractionOutcome("skipped")

        turns = _turns_from_artifact(artifact)
        text = artifact.transcript_text if artifact is not None else None
        transcript = format_transcript(turns, text)
        if not transcript:
            return ExtractionOutcome("transcript_missing", error="transcript_missing")

        logger.info("Running extraction for call %s (intent=%s)", call.id, call.call_intent.value)
        try:
            content = await self.client.complete_json(SYSTEM_PROMPT, build_user_prompt(call, transcript))
            answers = parse_extraction_output(content, call.is_reservation)
        except ExtractionError as e:
            logger.error("Extraction failed for call %s: %s", call.id, e.detail)
            return ExtractionOutcome("failed", error=e.detail)

        reservation = answers.get("reservation")
        if reservation is not None:
            timezone_name = call.reservation_timezone or reservation.get("timezone")
            reservation["confirmed_datetime_local_iso"] = normalize_local_datetime(
                reservation.get("confirmed_datetime_local_iso"),
                timezone_name,
                fallback_timezone=self.default_timezone,
            )
        return ExtractionOutcome("succeeded", answers=answers)

    async def persist(self, call: Call, outcome: ExtractionOutcome, claim: str | None) -> bool:
        """Write the outcome if the lease `claim` still holds. Returns False if it was lost."""
        updates: dict = {
            "is_extracting": False,
            "extraction_claim": None,
            "extraction_claimed_at": None,
        }
        if outcome.kind == "transcript_missing":
            updates["failure_reason"] = "transcript_missing"
        elif outcome.kind == "failed":
            updates["failure_reason"] = "extraction_failed"
            updates["failure_details"] = outcome.error
        elif outcome.kind == "succeeded":
            updates["failure_reason"] = None
            updates["failure_details"] = None
            if call.is_reservation and outcome.reservation is not None:
                updates["reservation_status"] = outcome.reservation["status"]
                updates["reservation_result"] = outcome.reservation

        if outcome.kind == "succeeded":
            await self.store.upsert_artifact(call.id, {"answers_json": outcome.answers})

        guard = {"extraction_claim": claim, "is_extracting": True}
        updated = await self.store.update_call(call.id, updates, guard=guard)
        if updated is None:
            logger.warning("Extraction lease for call %s was lost, discarding result", call.id)
            if outcome.kind == "succeeded":
                await self._drop_orphaned_answers(call.id)
            return False

        logger.info("Extraction %s for call %s", outcome.kind, call.id)
        return True

    async def run(self, call: Call, artifact: CallArtifact | None, claim: str | None, force: bool = False) -> ExtractionOutcome:
        outcome = await self.extract(call, artifact, force=force)
        await self.persist(call, outcome, claim)
        return outcome

    async def _drop_orphaned_answers(self, call_id: str) -> None:
        try:
            current = await self.store.get_call(call_id)
            if current is not None and current.status != CallStatus.COMPLETED:
                await self.store.upsert_artifact(call_id, {"answers_json": None})
        except StorageError as e:
            logger.error("Could not clear orphaned answers for call %s: %s", call_id, e)


def _turns_from_artifact(artifact: CallArtifact | None) -> list[TranscriptTurn]:
    if artifact is None or not artifact.transcript_json:
        return []
    turns = []
    for item in artifact.transcript_json:
        try:
            turns.append(TranscriptTurn.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed transcript turn in artifact %s", artifact.call_id)
    return turns
