from tablecall.events import TranscriptTurn

ROLE_LABELS = {
    "agent": "Agent",
    "user": "Restaurant",
}


def format_timestamp(seconds: float) -> str:
    """Format seconds from call start as mm:ss."""
    total = int(max(seconds, 0))
    return f"{total // 60:02d}:{total % 60:02d}"


def to_readable_text(turns: list[TranscriptTurn]) -> str:
    """Convert structured turns to speaker-labeled lines.

    Lines look like "[00:05] Agent: Hi, ..."; the timestamp comes from the
    first word of the turn and is omitted when the provider sent no word
    timings.
    """
    if not turns:
        return ""

    lines = []
    for turn in turns:
        role = turn.speaker_role
        label = ROLE_LABELS.get(role, role)
        start = turn.start_seconds
        prefix = f"[{format_timestamp(start)}] " if start is not None else ""
        lines.append(f"{prefix}{label}: {turn.content}".strip())
    return "\n".join(lines)


def format_transcript(turns: list[TranscriptTurn] | None, text: str | None) -> str:
    """Readable transcript from structured turns, falling back to raw text."""
    if turns:
        return to_readable_text(turns)
    if text and text.strip():
        return text.strip()
    return ""
