"""Derivation of the bounded history window sent with each generation call."""

from typing import Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from ..models.schemas import Message, RemoteRef, media_kind_for_mime

PROFILE_HEADER = "Learner Profile (global):"
PROFILE_FOOTER = "END OF GLOBAL PROFILE MEMORY."
SUMMARY_HEADER = "Conversation Summary:"
PREVIOUS_IMAGE_NOTE = "[Previous image context omitted]"


def omitted_note(kind: str) -> str:
    return f"[{kind} context omitted]"


class WindowItem(BaseModel):
    """One history turn as the generation service sees it."""
    message_id: Optional[str] = None
    role: Literal["user", "assistant"]
    text: str = ""
    remote_ref: Optional[RemoteRef] = None


class HistoryWindow(BaseModel):
    """Leading context preface plus the ordered window items."""
    preface: Optional[str] = None
    items: List[WindowItem] = Field(default_factory=list)

    @property
    def live_ref_count(self) -> int:
        return sum(1 for item in self.items if item.remote_ref is not None)

    def to_turns(self) -> List[WindowItem]:
        """
        Flatten the preface into the turn list.

        The preface is prepended to the first item when that item is a user
        turn, otherwise it becomes a synthetic leading user turn.
        """
        items = list(self.items)
        if not self.preface:
            return items
        if items and items[0].role == "user":
            first = items[0]
            joined = f"{self.preface}\n\n{first.text}" if first.text else self.preface
            items[0] = first.model_copy(update={"text": joined})
            return items
        return [WindowItem(role="user", text=self.preface)] + items


def bookmark_index(messages: List[Message], bookmark_id: Optional[str]) -> int:
    """Index of a usable bookmark (existing, not a placeholder), else -1."""
    if not bookmark_id:
        return -1
    for i, message in enumerate(messages):
        if message.id == bookmark_id and not message.thinking:
            return i
    return -1


def trim_by_bookmark(messages: List[Message], bookmark_id: Optional[str]) -> List[Message]:
    idx = bookmark_index(messages, bookmark_id)
    return list(messages[idx + 1:]) if idx >= 0 else list(messages)


def select_candidates(
    messages: List[Message],
    bookmark_id: Optional[str],
    max_turns: Optional[int],
) -> List[Message]:
    """Real turns after the bookmark, limited to the most recent max_turns."""
    real = [m for m in trim_by_bookmark(messages, bookmark_id) if m.is_real_turn]
    if max_turns is not None and len(real) > max_turns:
        real = real[len(real) - max_turns:] if max_turns > 0 else []
    return real


def resolve_context_summary(messages: List[Message], bookmark_id: Optional[str]) -> Optional[str]:
    """Latest chat summary at or before the bookmark; None without a usable bookmark."""
    idx = bookmark_index(messages, bookmark_id)
    for i in range(idx, -1, -1):
        if messages[i].chat_summary:
            return messages[i].chat_summary
    return None


def build_context_preface(
    summary: Optional[str],
    profile_text: Optional[str],
    max_chars: int = 10000,
) -> Optional[str]:
    sections = []
    profile = (profile_text or "").strip()
    if profile:
        sections.append(f"{PROFILE_HEADER}\n{profile[:max_chars]}\n{PROFILE_FOOTER}")
    summary = (summary or "").strip()
    if summary:
        sections.append(f"{SUMMARY_HEADER}\n{summary[:max_chars]}")
    return "\n\n".join(sections) if sections else None


def window_text(message: Message) -> str:
    """Text a message contributes to the window."""
    if message.role == "assistant":
        if message.raw_response:
            return message.raw_response
        return message.target_text()
    return (message.text or "").strip()


def build_window(
    messages: List[Message],
    bookmark_id: Optional[str],
    max_turns: Optional[int],
    media_budget: int,
    profile_text: Optional[str] = None,
    verified_ids: Optional[Set[str]] = None,
    ref_overrides: Optional[Dict[str, RemoteRef]] = None,
    max_context_chars: int = 10000,
) -> HistoryWindow:
    """
    Build the history window for a generation call.

    Deterministic: the same arguments always produce an equal window.

    Args:
        messages: Full ordered message list
        bookmark_id: Truncation bookmark; the window starts strictly after it
        max_turns: Maximum number of real turns to keep
        media_budget: Maximum number of items carrying a live remote reference
        profile_text: Long-lived learner profile digest
        verified_ids: Message ids whose references the last ensure pass
            verified; None trusts every stored reference
        ref_overrides: Corrected references by message id
        max_context_chars: Cap for each preface section

    Returns:
        HistoryWindow with preface and items
    """
    ref_overrides = ref_overrides or {}
    candidates = select_candidates(messages, bookmark_id, max_turns)

    media_ids = [m.id for m in candidates if m.has_media or m.id in ref_overrides]
    kept = set(media_ids[len(media_ids) - media_budget:]) if media_budget > 0 else set()

    items = []
    for message in candidates:
        text = window_text(message)
        ref = ref_overrides.get(message.id, message.remote_ref)
        has_media = message.has_media or message.id in ref_overrides
        live_ref = None
        if has_media:
            trusted = verified_ids is None or message.id in verified_ids
            if message.id in kept and ref is not None and trusted:
                live_ref = ref
            else:
                kind = media_kind_for_mime(ref.mime_type) if ref else (message.media_kind or "file")
                note = omitted_note(kind)
                text = f"{text} {note}".strip()
        items.append(
            WindowItem(
                message_id=message.id,
                role="assistant" if message.role == "assistant" else "user",
                text=text,
                remote_ref=live_ref,
            )
        )

    summary = resolve_context_summary(messages, bookmark_id)
    preface = build_context_preface(summary, profile_text, max_context_chars)
    return HistoryWindow(preface=preface, items=items)


def restrict_for_image_generation(window: HistoryWindow, max_images: int = 3) -> HistoryWindow:
    """Keep only the most recent image references; annotate everything dropped."""
    kept_images = 0
    restricted: List[WindowItem] = []
    for item in reversed(window.items):
        ref = item.remote_ref
        if ref is None:
            restricted.append(item)
            continue
        kind = media_kind_for_mime(ref.mime_type)
        if kind == "image" and kept_images < max_images:
            kept_images += 1
            restricted.append(item)
            continue
        note = PREVIOUS_IMAGE_NOTE if kind == "image" else omitted_note(kind)
        restricted.append(
            item.model_copy(update={"remote_ref": None, "text": f"{item.text} {note}".strip()})
        )
    restricted.reverse()
    return HistoryWindow(preface=window.preface, items=restricted)
