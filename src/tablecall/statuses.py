from enum import Enum

TERMINAL_STATUSES = {"completed", "failed"}
NO_HUMAN_FAILURE_REASONS = {"voicemail", "no_answer", "busy", "dial_failed"}


class CallStatus(Enum):
    QUEUED = "queued"
    CALLING = "calling"
    CONNECTED = "connected"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATUSES


class CallIntent(Enum):
    MAKE_RESERVATION = "make_reservation"
    QUESTIONS_ONLY = "questions_only"


class ReservationStatus(Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NEEDS_FOLLOWUP = "needs_followup"


class ProviderEvent(Enum):
    CALL_STARTED = "call_started"
    CALL_CONNECTED = "call_connected"
    CALL_ENDED = "call_ended"
    CALL_ANALYZED = "call_analyzed"

    @property
    def is_completion(self) -> bool:
        return self in (ProviderEvent.CALL_ENDED, ProviderEvent.CALL_ANALYZED)

    @classmethod
    def parse(cls, name: str) -> "ProviderEvent | None":
        try:
            return cls(name)
        except ValueError:
            return None
