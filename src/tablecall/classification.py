"""Human-vs-voicemail classification for completion events.

Each rule looks at one kind of evidence and returns a RuleVerdict:
True means "no human reached", False means "a human was reached", None
means the rule has nothing to say. Detection rules run in order and the first
that votes decides; the conversation-evidence rule runs last and can
override a detection vote.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from tablecall.events import CallPayload

logger = logging.getLogger(__name__)

DEFAULT_DURATION_THRESHOLD_MS = 5000

# Provider disconnection reasons that mean the dial never reached a person,
# mapped to the failure category recorded on the call.
NO_HUMAN_DISCONNECTION_REASONS = {
    "voicemail_reached": "voicemail",
    "dial_no_answer": "no_answer",
    "dial_busy": "busy",
    "dial_failed": "dial_failed",
}

VOICEMAIL_PHRASES = (
    "forwarded to voicemail",
    "record your message",
    "at the tone",
    "not available",
    "leave a message",
    "leave your message",
    "after the beep",
)

# Text transcripts arrive as "Agent: ...\nUser: ..." lines.
SPEAKER_LINE = re.compile(r"^\s*([A-Za-z_ ]{1,20}):\s*(.*)$")
MIN_CONVERSATION_CHARS = 40


@dataclass
class RuleVerdict:
    rule: str
    verdict: bool | None
    evidence: str = ""
    category: str | None = None


@dataclass
class OutcomeClassification:
    no_human_reached: bool
    category: str | None = None
    deciding_rule: str | None = None
    trail: list[RuleVerdict] = field(default_factory=list)

    def summary(self) -> str:
        parts = [f"{v.rule}={v.verdict}" for v in self.trail]
        return ", ".join(parts)


# --- Detection rules ---

def provider_voicemail_flag(call: CallPayload, duration_threshold_ms: int) -> RuleVerdict:
    analysis = call.call_analysis
    if analysis is not None and analysis.in_voicemail is True:
        return RuleVerdict(
            "provider_voicemail_flag", True,
            "call_analysis.in_voicemail=true", category="voicemail",
        )
    return RuleVerdict("provider_voicemail_flag", None)


def disconnection_reason(call: CallPayload, duration_threshold_ms: int) -> RuleVerdict:
    reason = call.disconnection_reason
    if reason in NO_HUMAN_DISCONNECTION_REASONS:
        return RuleVerdict(
            "disconnection_reason", True,
            f"disconnection_reason={reason}",
            category=NO_HUMAN_DISCONNECTION_REASONS[reason],
        )
    return RuleVerdict("disconnection_reason", None)


def voicemail_phrases(call: CallPayload, duration_threshold_ms: int) -> RuleVerdict:
    # Phrases only count when the provider did not mark the call successful.
    if call.call_analysis is not None and call.call_analysis.call_successful is True:
        return RuleVerdict("voicemail_phrases", None, "call_analysis.call_successful=true")
    text = transcript_text_of(call).lower()
    for phrase in VOICEMAIL_PHRASES:
        if phrase in text:
            return RuleVerdict(
                "voicemail_phrases", True,
                f"transcript contains '{phrase}'", category="voicemail",
            )
    return RuleVerdict("voicemail_phrases", None)


DETECTION_RULES: list[Callable[[CallPayload, int], RuleVerdict]] = [
    provider_voicemail_flag,
    disconnection_reason,
    voicemail_phrases,
]


# --- Override rule ---

def conversation_evidence(call: CallPayload, duration_threshold_ms: int) -> RuleVerdict:
    """Strong evidence that a real two-party conversation took place."""
    if call.duration_ms is not None and call.duration_ms > duration_threshold_ms:
        return RuleVerdict(
            "conversation_evidence", False,
            f"duration_ms={call.duration_ms} > {duration_threshold_ms}",
        )

    if call.transcript_object:
        counts: dict[str, int] = {}
        for turn in call.transcript_object:
            if turn.content.strip():
                role = turn.speaker_role
                counts[role] = counts.get(role, 0) + 1
        if len(counts) >= 2 and max(counts.values()) > 1:
            return RuleVerdict(
                "conversation_evidence", False,
                f"structured turns per speaker: {counts}",
            )

    if call.transcript:
        switches, speakers, chars = _text_turn_stats(call.transcript)
        if len(speakers) >= 2 and switches >= 2 and chars >= MIN_CONVERSATION_CHARS:
            return RuleVerdict(
                "conversation_evidence", False,
                f"text transcript: {switches} speaker switches, {chars} chars",
            )

    return RuleVerdict("conversation_evidence", None)


def _text_turn_stats(transcript: str) -> tuple[int, set[str], int]:
    switches = 0
    chars = 0
    speakers: set[str] = set()
    previous = None
    for line in transcript.splitlines():
        match = SPEAKER_LINE.match(line)
        if not match:
            continue
        speaker = match.group(1).strip().lower()
        content = match.group(2).strip()
        if not content:
            continue
        speakers.add(speaker)
        chars += len(content)
        if previous is not None and speaker != previous:
            switches += 1
        previous = speaker
    return switches, speakers, chars


def transcript_text_of(call: CallPayload) -> str:
    if call.transcript:
        return call.transcript
    if call.transcript_object:
        return "\n".join(turn.content for turn in call.transcript_object)
    return ""


def classify_outcome(
    call: CallPayload,
    duration_threshold_ms: int = DEFAULT_DURATION_THRESHOLD_MS,
) -> OutcomeClassification:
    """Decide whether the call reached a human.

    Returns an OutcomeClassification whose trail lists every rule's verdict,
    including rules that were skipped because an earlier one decided.
    """
    trail: list[RuleVerdict] = []
    decided: RuleVerdict | None = None

    for rule in DETECTION_RULES:
        if decided is not None:
            trail.append(RuleVerdict(rule.__name__, None, "skipped"))
            continue
        verdict = rule(call, duration_threshold_ms)
        trail.append(verdict)
        if verdict.verdict is not None:
            decided = verdict

    override = conversation_evidence(call, duration_threshold_ms)
    trail.append(override)

    if decided is not None and override.verdict is False:
        logger.info(
            "Voicemail signal (%s) overridden by conversation evidence (%s)",
            decided.evidence, override.evidence,
        )
        return OutcomeClassification(
            no_human_reached=False,
            deciding_rule=override.rule,
            trail=trail,
        )

    if decided is not None:
        return OutcomeClassification(
            no_human_reached=True,
            category=decided.category,
            deciding_rule=decided.rule,
            trail=trail,
        )

    return OutcomeClassification(
        no_human_reached=False,
        deciding_rule=override.rule if override.verdict is not None else None,
        trail=trail,
    )
