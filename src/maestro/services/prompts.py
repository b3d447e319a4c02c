"""Prompt template loading and context injection."""

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from ..models.schemas import LanguagePair, Message

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

REENGAGEMENT_PROMPT = "..."
NO_HISTORY_TEXT = "No history yet."
NO_SUMMARY_TEXT = "(none)"


@lru_cache(maxsize=None)
def load_prompt_template(name: str) -> str:
    """Load a prompt template from the prompts directory."""
    prompt_file = PROMPTS_DIR / f"{name}.prompt.md"
    if not prompt_file.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompt_file}")
    return prompt_file.read_text(encoding="utf-8").strip()


def inject_context(template: str, context: Dict[str, str]) -> str:
    """
    Inject context into prompt template.

    Args:
        template: Prompt template with {{PLACEHOLDER}} markers
        context: Dictionary of placeholder values

    Returns:
        Prompt with placeholders replaced
    """
    prompt = template
    for key, value in context.items():
        placeholder = f"{{{{{key}}}}}"
        prompt = prompt.replace(placeholder, str(value))
    return prompt


def _language_context(pair: LanguagePair) -> Dict[str, str]:
    return {
        "TARGET_LANGUAGE_NAME": pair.target_name,
        "NATIVE_LANGUAGE_NAME": pair.native_name,
        "NATIVE_LANGUAGE_CODE_SHORT": pair.native_short,
    }


def build_system_instruction(pair: LanguagePair, voice_persona: bool = True) -> str:
    """Tutor system instruction for a language pair."""
    instruction = inject_context(load_prompt_template("tutor_system"), _language_context(pair))
    if voice_persona:
        instruction = f"{instruction}\n\n{load_prompt_template('voice_persona')}"
    return instruction


def format_suggestion_history(turns: List[Message]) -> str:
    """Compact 'User: ... / Tutor: ...' transcript of recent turns."""
    lines = []
    for message in turns:
        if message.role == "user":
            text = (message.text or "").strip() or "(sent an image)"
            lines.append(f"User: {text}")
        elif message.role == "assistant":
            if message.translations:
                text = message.translations[0].target
            else:
                text = message.raw_response or message.text or ""
            lines.append(f"Tutor: {text.strip()}")
    return "\n".join(lines) if lines else NO_HISTORY_TEXT


def build_suggestion_prompt(
    pair: LanguagePair,
    tutor_message: str,
    history_turns: List[Message],
    previous_summary: Optional[str],
) -> str:
    context = _language_context(pair)
    context.update(
        TUTOR_MESSAGE=tutor_message,
        CONVERSATION_HISTORY=format_suggestion_history(history_turns),
        PREVIOUS_CHAT_SUMMARY=previous_summary or "",
    )
    return inject_context(load_prompt_template("reply_suggestions"), context)


def build_profile_merge_prompt(existing: str, summary: str, max_chars: int) -> str:
    return inject_context(
        load_prompt_template("profile_merge"),
        {
            "EXISTING_PROFILE": existing.strip() or NO_SUMMARY_TEXT,
            "NEW_SUMMARY": summary.strip(),
            "MAX_CHARS": str(max_chars),
        },
    )


def build_image_prompt(text: str) -> str:
    return inject_context(load_prompt_template("image_user"), {"TEXT": text})


def image_system_instruction() -> str:
    return load_prompt_template("image_system")


def image_extra_user_message() -> str:
    return load_prompt_template("image_extra")
