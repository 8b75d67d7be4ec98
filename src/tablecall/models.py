from dataclasses import dataclass, field, fields, replace
from datetime import datetime

from tablecall.statuses import CallIntent, CallStatus


@dataclass
class Call:
    id: str
    provider_call_id: str
    status: CallStatus = CallStatus.QUEUED
    call_intent: CallIntent = CallIntent.QUESTIONS_ONLY
    is_extracting: bool = False

    # Written by this core
    reservation_status: str | None = None
    reservation_result: dict | None = None
    failure_reason: str | None = None
    failure_details: str | None = None
    # Set once a late analysis has flipped a settled status
    status_corrected: bool = False

    # Extraction lease
    extraction_claim: str | None = None
    extraction_claimed_at: datetime | None = None

    # Request context (written by intake, read-only here)
    restaurant_name: str | None = None
    reservation_name: str | None = None
    reservation_phone_e164: str | None = None
    reservation_datetime_local_iso: str | None = None
    reservation_timezone: str | None = None
    reservation_party_size: int | None = None
    questions_json: dict = field(default_factory=dict)

    updated_at: datetime | None = None

    @property
    def is_reservation(self) -> bool:
        return self.call_intent == CallIntent.MAKE_RESERVATION

    @property
    def is_settled(self) -> bool:
        """Terminal and not waiting on extraction; what pollers treat as final."""
        return self.status.is_terminal and not self.is_extracting

    def with_updates(self, updates: dict) -> "Call":
        return replace(self, **updates)

    @classmethod
    def from_row(cls, row: dict) -> "Call":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["status"] = CallStatus(row.get("status") or "queued")
        data["call_intent"] = CallIntent(row.get("call_intent") or "questions_only")
        data["is_extracting"] = bool(row.get("is_extracting"))
        data["status_corrected"] = bool(row.get("status_corrected"))
        data["questions_json"] = row.get("questions_json") or {}
        for key in ("extraction_claimed_at", "updated_at"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return cls(**data)


@dataclass
class CallArtifact:
    call_id: str
    transcript_text: str | None = None
    transcript_json: list | None = None
    answers_json: dict | None = None
    # Audit only; never returned to readers
    raw_payload: dict | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "CallArtifact":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        if isinstance(data.get("updated_at"), str):
            data["updated_at"] = datetime.fromisoformat(data["updated_at"].replace("Z", "+00:00"))
        return cls(**data)


def to_row(updates: dict) -> dict:
    """Serialize an update dict for storage: enums to values, datetimes to ISO strings."""
    row = {}
    for key, value in updates.items():
        if isinstance(value, (CallStatus, CallIntent)):
            row[key] = value.value
        elif isinstance(value, datetime):
            row[key] = value.isoformat()
        else:
            row[key] = value
    return row
