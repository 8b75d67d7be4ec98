"""Status transition engine.

plan_transition() turns (stored call, incoming event, classification) into a
TransitionPlan. It never writes; the webhook service commits the plan with a
guarded update so a concurrent writer can't be overwritten.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from tablecall.classification import OutcomeClassification
from tablecall.events import WebhookEnvelope
from tablecall.models import Call, CallArtifact
from tablecall.statuses import (
    CallStatus,
    NO_HUMAN_FAILURE_REASONS,
    ProviderEvent,
    ReservationStatus,
)

logger = logging.getLogger(__name__)

# Allowed predecessors for each target status.
TRANSITIONS = {
    CallStatus.QUEUED: set(),
    CallStatus.CALLING: {CallStatus.QUEUED},
    CallStatus.CONNECTED: {CallStatus.QUEUED, CallStatus.CALLING},
    CallStatus.COMPLETED: {CallStatus.QUEUED, CallStatus.CALLING, CallStatus.CONNECTED},
    CallStatus.FAILED: {
        CallStatus.QUEUED, CallStatus.CALLING, CallStatus.CONNECTED, CallStatus.COMPLETED,
    },
}

# Flips allowed once a call is settled, only for a richer analysis event and
# at most once per call (tracked by Call.status_corrected).
CORRECTIONS = {
    CallStatus.COMPLETED: {CallStatus.FAILED},
    CallStatus.FAILED: {CallStatus.COMPLETED},
}

EVENT_TARGETS = {
    ProviderEvent.CALL_STARTED: CallStatus.CALLING,
    ProviderEvent.CALL_CONNECTED: CallStatus.CONNECTED,
}

TRANSCRIPT_MISSING = "transcript_missing"


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    return current in TRANSITIONS[target]


def can_correct(current: CallStatus, target: CallStatus) -> bool:
    return current in CORRECTIONS.get(target, set())


@dataclass
class TransitionPlan:
    apply: bool
    reason: str
    updates: dict = field(default_factory=dict)
    artifact_updates: dict = field(default_factory=dict)
    run_extraction: bool = False
    force_extraction: bool = False
    claim: str | None = None

    @classmethod
    def ignore(cls, reason: str) -> "TransitionPlan":
        return cls(apply=False, reason=reason)


def lease_is_fresh(call: Call, now: datetime, lease_seconds: float) -> bool:
    if not call.extraction_claim or call.extraction_claimed_at is None:
        return False
    return now - call.extraction_claimed_at < timedelta(seconds=lease_seconds)


def artifact_fields(envelope: WebhookEnvelope, raw_payload: dict) -> dict:
    """Artifact columns written for every processed delivery."""
    fields = {"raw_payload": raw_payload}
    payload = envelope.call
    if payload is not None and payload.transcript:
        fields["transcript_text"] = payload.transcript
    raw_turns = (raw_payload.get("call") or {}).get("transcript_object")
    if raw_turns:
        fields["transcript_json"] = raw_turns
    return fields


def failure_details(envelope: WebhookEnvelope, classification: OutcomeClassification) -> str:
    payload = envelope.call
    details: dict = {}
    if payload is not None:
        if payload.disconnection_reason:
            details["disconnection_reason"] = payload.disconnection_reason
        if payload.call_analysis is not None:
            if payload.call_analysis.in_voicemail is not None:
                details["in_voicemail"] = payload.call_analysis.in_voicemail
            if payload.call_analysis.call_successful is not None:
                details["call_successful"] = payload.call_analysis.call_successful
        if payload.duration_ms is not None:
            details["duration_ms"] = payload.duration_ms
    details["decided_by"] = classification.deciding_rule
    return json.dumps(details)


def followup_reservation(call: Call, category: str | None) -> dict:
    """Reservation result for a request the restaurant never picked up."""
    reason = {
        "voicemail": "The call went to voicemail.",
        "busy": "The line was busy.",
        "dial_failed": "The call could not be placed.",
    }.get(category or "", "Nobody answered the call.")
    return {
        "status": ReservationStatus.NEEDS_FOLLOWUP.value,
        "details": f"{reason} The reservation was not made; call the restaurant back to book.",
        "confirmed_datetime_local_iso": None,
        "timezone": call.reservation_timezone,
        "party_size": call.reservation_party_size,
        "name": call.reservation_name,
        "callback_phone_e164": call.reservation_phone_e164,
        "confirmation_number": None,
        "failure_reason": reason,
        "failure_category": "call_back_later",
    }


def plan_transition(
    call: Call,
    artifact: CallArtifact | None,
    envelope: WebhookEnvelope,
    raw_payload: dict,
    classification: OutcomeClassification | None,
    now: datetime,
    lease_seconds: float,
) -> TransitionPlan:
    event = envelope.provider_event

    if lease_is_fresh(call, now, lease_seconds):
        return TransitionPlan.ignore("extraction in progress")

    corrective = False
    reopen = False
    if call.is_settled:
        if event != ProviderEvent.CALL_ANALYZED or classification is None:
            return TransitionPlan.ignore(f"call already settled as {call.status.value}")
        corrective, reopen = _correction_for(call, envelope, classification)
        if not (corrective or reopen):
            return TransitionPlan.ignore(f"duplicate {envelope.event} for settled call")

    plan = TransitionPlan(apply=True, reason=envelope.event)
    plan.artifact_updates = artifact_fields(envelope, raw_payload)

    if event is None:
        plan.reason = f"unrecognized event {envelope.event!r}, payload stored"
        return plan

    if not event.is_completion:
        target = EVENT_TARGETS[event]
        if can_transition(call.status, target):
            plan.updates["status"] = target
            plan.reason = f"{call.status.value} -> {target.value}"
        else:
            plan.reason = f"stale {event.value} ignored for status {call.status.value}"
        return plan

    if classification is None:
        raise ValueError("completion events require a classification")

    flips_terminal = call.status.is_terminal and (
        classification.no_human_reached != (call.status == CallStatus.FAILED)
    )
    if call.status_corrected and flips_terminal:
        return TransitionPlan.ignore(f"status already corrected to {call.status.value}")
    if corrective:
        plan.updates["status_corrected"] = True

    if classification.no_human_reached:
        return _plan_no_human(plan, call, envelope, classification, corrective)

    return _plan_human(plan, call, artifact, envelope, event, corrective or reopen, now)


def _correction_for(
    call: Call, envelope: WebhookEnvelope, classification: OutcomeClassification,
) -> tuple[bool, bool]:
    """(status flip, reopen extraction) for a late analysis event on a settled call."""
    # A status is corrected at most once; later contradictions are ignored.
    if not call.status_corrected:
        if call.status == CallStatus.COMPLETED and classification.no_human_reached:
            return can_correct(call.status, CallStatus.FAILED), False
        if (
            call.status == CallStatus.FAILED
            and not classification.no_human_reached
            and call.failure_reason in NO_HUMAN_FAILURE_REASONS
        ):
            return can_correct(call.status, CallStatus.COMPLETED), False
    if (
        call.status == CallStatus.COMPLETED
        and not classification.no_human_reached
        and call.failure_reason == TRANSCRIPT_MISSING
        and envelope.call is not None
        and envelope.call.has_transcript
    ):
        return False, True
    return False, False


def _plan_no_human(
    plan: TransitionPlan,
    call: Call,
    envelope: WebhookEnvelope,
    classification: OutcomeClassification,
    corrective: bool,
) -> TransitionPlan:
    was_completed = call.status == CallStatus.COMPLETED
    plan.updates.update({
        "status": CallStatus.FAILED,
        "is_extracting": False,
        "failure_reason": classification.category or "no_answer",
        "failure_details": failure_details(envelope, classification),
        "extraction_claim": None,
        "extraction_claimed_at": None,
    })
    if was_completed:
        plan.artifact_updates["answers_json"] = None

    if call.is_reservation and (
        was_completed
        or call.reservation_status in (None, ReservationStatus.REQUESTED.value)
    ):
        plan.updates["reservation_status"] = ReservationStatus.NEEDS_FOLLOWUP.value
        plan.updates["reservation_result"] = followup_reservation(call, classification.category)

    plan.reason = (
        f"{'corrected ' if corrective else ''}{call.status.value} -> failed "
        f"(no human reached: {classification.deciding_rule})"
    )
    return plan


def _plan_human(
    plan: TransitionPlan,
    call: Call,
    artifact: CallArtifact | None,
    envelope: WebhookEnvelope,
    event: ProviderEvent,
    force: bool,
    now: datetime,
) -> TransitionPlan:
    if can_transition(call.status, CallStatus.COMPLETED) or can_correct(call.status, CallStatus.COMPLETED):
        plan.updates["status"] = CallStatus.COMPLETED

    payload = envelope.call
    has_transcript = (payload is not None and payload.has_transcript) or _artifact_has_transcript(artifact)

    if not has_transcript:
        plan.updates.update({
            "is_extracting": False,
            "failure_reason": TRANSCRIPT_MISSING,
        })
        plan.reason = f"{call.status.value} -> completed without transcript"
        return plan

    plan.updates.update({
        "is_extracting": True,
        "failure_reason": None,
        "failure_details": None,
    })
    if force:
        plan.artifact_updates["answers_json"] = None

    if event == ProviderEvent.CALL_ANALYZED:
        plan.claim = uuid.uuid4().hex
        plan.updates["extraction_claim"] = plan.claim
        plan.updates["extraction_claimed_at"] = now
        plan.run_extraction = True
        plan.force_extraction = force
        plan.reason = f"{call.status.value} -> completed, extracting"
    else:
        plan.reason = f"{call.status.value} -> completed, extraction deferred to call_analyzed"
    return plan


def _artifact_has_transcript(artifact: CallArtifact | None) -> bool:
    if artifact is None:
        return False
    return bool((artifact.transcript_text and artifact.transcript_text.strip()) or artifact.transcript_json)
