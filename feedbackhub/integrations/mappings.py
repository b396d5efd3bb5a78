"""Translation tables between FeedbackHub and provider vocabularies."""

from __future__ import annotations

import re

TITLE_MAX_LENGTH = 100
_SENTENCE_END = re.compile(r"[.!?]")

ZENDESK_PRIORITY_TO_FEEDBACK = {
    "low": "low",
    "normal": "medium",
    "high": "high",
    "urgent": "urgent",
}
FEEDBACK_PRIORITY_TO_ZENDESK = {
    "low": "low",
    "medium": "normal",
    "high": "high",
    "urgent": "urgent",
}
ZENDESK_STATUS_TO_FEEDBACK = {
    "new": "new",
    "open": "triaged",
    "pending": "in_progress",
    "hold": "in_progress",
    "solved": "resolved",
    "closed": "archived",
}
FEEDBACK_STATUS_TO_ZENDESK = {
    "new": "new",
    "triaged": "open",
    "planned": "open",
    "in_progress": "pending",
    "resolved": "solved",
    "archived": "closed",
}
STATUS_EMOJI = {
    "new": "🆕",
    "triaged": "🔍",
    "planned": "📋",
    "in_progress": "⚡",
    "resolved": "✅",
    "archived": "📁",
}
UPVOTE_REACTIONS = frozenset({"thumbsup", "+1", "heart", "star"})


def zendesk_priority(value: str | None) -> str:
    return ZENDESK_PRIORITY_TO_FEEDBACK.get((value or "").lower(), "medium")


def to_zendesk_priority(value: str | None) -> str:
    return FEEDBACK_PRIORITY_TO_ZENDESK.get(value or "", "normal")


def zendesk_status(value: str | None) -> str:
    return ZENDESK_STATUS_TO_FEEDBACK.get((value or "").lower(), "new")


def to_zendesk_status(value: str | None) -> str:
    return FEEDBACK_STATUS_TO_ZENDESK.get(value or "", "open")


def to_intercom_state(value: str | None) -> str:
    return "closed" if value in ("resolved", "archived") else "open"


def status_emoji(value: str | None) -> str:
    return STATUS_EMOJI.get(value or "", "📝")


def extract_title(text: str | None, default: str) -> str:
    """First sentence of ``text``, shortened to 100 characters."""

    text = (text or "").strip()
    if not text:
        return default
    title = _SENTENCE_END.split(text, maxsplit=1)[0].strip()
    if not title:
        return default
    if len(title) > TITLE_MAX_LENGTH:
        return title[:TITLE_MAX_LENGTH] + "..."
    return title


_TAG_RE = re.compile(r"<[^>]+>")


def strip_html(value: str | None) -> str:
    """Intercom message bodies are HTML fragments."""

    return _TAG_RE.sub("", value or "").strip()


__all__ = [
    "STATUS_EMOJI",
    "TITLE_MAX_LENGTH",
    "UPVOTE_REACTIONS",
    "extract_title",
    "status_emoji",
    "strip_html",
    "to_intercom_state",
    "to_zendesk_priority",
    "to_zendesk_status",
    "zendesk_priority",
    "zendesk_status",
]
