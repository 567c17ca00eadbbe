# backend/prompt.py

from typing import Any, Dict, List, Optional, Sequence, Union

from backend_matcher import ScoredMatch


NO_CONTEXT = "None with high confidence."

MODE_GUIDANCE = {
    "text": "The user typed a description of the problem.",
    "audio": (
        "You receive a transcription of what the user said about a sound. "
        "Interpret the type of sound (knock, click, squeal, whine, rattle, etc.), "
        "say how risky it is to keep driving, and never claim certainty from audio alone."
    ),
    "image": (
        "The user sent a photo of a car, engine or part. Describe what you see, "
        "combine it with any text from the user, and remind them that a real mechanic "
        "should inspect the car for a final diagnosis."
    ),
}

DEFAULT_USER_TEXT = {
    "text": "The user did not provide any description. Ask them kindly to describe the problem with their car.",
    "audio": "The user did not describe the sound. Ask them kindly to describe when and where they hear it.",
    "image": "Analyze this car-related image and explain what might be going on. Then give actionable advice and safety notes.",
}


def _join(items: Sequence[str]) -> str:
    return "; ".join(i.strip() for i in items if i and i.strip())


def build_issues_context(matches: Sequence[ScoredMatch]) -> str:
    """
    Serialize ranked matches into numbered, human-readable blocks for the
    system prompt. Empty fields are left out.
    """
    if not matches:
        return NO_CONTEXT

    blocks = []
    for idx, match in enumerate(matches, start=1):
        record = match.record
        lines = [f"{idx}. {match.title}"]
        if record.system:
            lines.append(f"System: {record.system}")
        if record.severity:
            lines.append(f"Severity: {record.severity}")

        symptoms = _join([record.symptom_short, *record.symptom_patterns])
        if symptoms:
            lines.append(f"Symptoms: {symptoms}")
        if record.possible_causes:
            lines.append(f"Possible causes: {_join(record.possible_causes)}")
        if record.recommended_actions:
            lines.append(f"Recommended actions: {_join(record.recommended_actions)}")
        if record.checks:
            lines.append(f"Checks: {_join(record.checks)}")
        if record.warnings:
            lines.append(f"Warnings: {_join(record.warnings)}")
        if record.notes:
            lines.append(f"Notes: {record.notes}")
        blocks.append("\n".join(lines))

    return "\n\n".join(blocks)


def build_system_prompt(mode: str, issues_context: str, language: Optional[str] = None) -> str:
    guidance = MODE_GUIDANCE.get(mode, MODE_GUIDANCE["text"])
    lang = language or "auto"

    return f"""
You are **FixLens Auto**, a friendly, expert automotive diagnosis assistant.

Goals:
- Help users understand possible causes of their car problems.
- Always be clear, calm, and safety-focused.
- Assume the user might not be a mechanic. Use simple language when possible.

Language:
- ALWAYS reply in the same language as the user's last message.
- Preferred language: {lang}. If it is "auto", detect it from the user's text.

Constraints:
- You are not physically inspecting the car.
- Never give absolute guarantees.
- Always include safety warnings when issues might be dangerous (brakes, steering, fuel, overheating, electrical burning smell, etc.).
- Encourage users to see a qualified mechanic when necessary.

Context:
- The user is using a mobile app called FixLens.
- Mode: {mode}. {guidance}
- Matched common issues from knowledge base (may or may not be correct):
{issues_context}

Response format:
1. Brief summary of what might be going on.
2. 2-4 possible causes, with short explanations.
3. Simple actions the user can try (if safe).
4. Clear safety note when needed.
""".strip()


def build_user_content(
    mode: str, text: Optional[str], image_data_url: Optional[str] = None
) -> Union[str, List[Dict[str, Any]]]:
    """
    Plain string for text/audio; OpenAI multi-part content (text + image_url)
    when an image is attached.
    """
    prompt_text = text.strip() if text and text.strip() else DEFAULT_USER_TEXT.get(mode, DEFAULT_USER_TEXT["text"])

    if image_data_url:
        return [
            {"type": "text", "text": prompt_text},
            {"type": "image_url", "image_url": {"url": image_data_url, "detail": "auto"}},
        ]
    return prompt_text
