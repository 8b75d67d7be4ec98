def _enabled(presets: dict, key: str) -> bool:
    preset = presets.get(key) or {}
    return bool(preset.get("enabled"))


def questions_asked(questions_json: dict | None) -> list[str]:
    """List the extra questions the agent was configured to ask.

    Built from the stored preset toggles plus non-blank custom questions, in
    the same wording the agent used, so extraction can line answers up.
    """
    questions_json = questions_json or {}
    presets = questions_json.get("presets") or {}
    questions = []

    if _enabled(presets, "wait_time_now"):
        questions.append("What's the wait time right now?")
    restriction = ((presets.get("dietary_options") or {}).get("restriction") or "").strip()
    if _enabled(presets, "dietary_options") and restriction:
        questions.append(f"Do you have {restriction} options?")
    if _enabled(presets, "hours_today"):
        questions.append("What are your hours today?")
    if _enabled(presets, "takes_reservations"):
        questions.append("Do you take reservations?")

    for question in questions_json.get("custom_questions") or []:
        if isinstance(question, str) and question.strip():
            questions.append(question.strip())

    return questions
