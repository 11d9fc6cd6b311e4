"""
Clarification layer.

Turns batch-validation errors into a short explanation the chat layer can
show instead of a guessed answer.

Works in ``mock`` mode (template-based, no API key needed) and ``llm`` mode
(asks the configured provider to phrase the same facts).
"""
from __future__ import annotations

from typing import Sequence

from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)


# ── Template-based explanations (mock / offline) ────────


_TEMPLATES: dict[str, str] = {
    "unknown entity": (
        "The data you asked about is not one of the ERP entities the copilot can read. "
        "Pick one of the listed entities."
    ),
    "unknown operation": (
        "The requested operation is not supported. Use search, count, aggregate, "
        "distinct, discover or inspect."
    ),
    "too many queries": "A single request can run at most five queries. Split the question into smaller parts.",
    "duplicate query id": "Two queries in the batch share the same id, so their results could not be told apart.",
    "requires a groupby": "Listing distinct values needs the field to list, for example groupBy: ['state'].",
    "date range": "The date range is reversed. The start date must come before the end date.",
    "limit": "The row limit is outside the permitted range.",
    "empty batch": "No query was given. Say what you want to know, e.g. 'sales this month by customer'.",
}


def _match_template(error_msg: str) -> str:
    lower = error_msg.lower()
    for key, template in _TEMPLATES.items():
        if key in lower:
            return template
    return "The request could not be interpreted as written. Rephrase it with the entity and period you need."


def explain_errors_mock(errors: Sequence[str]) -> str:
    """Markdown clarification built from templates (no LLM call)."""
    if not errors:
        return ""

    sections = ["**I need a clarification before running this:**\n"]
    for i, err in enumerate(errors, 1):
        sections.append(f"{i}. {err}\n   → {_match_template(err)}")
    return "\n".join(sections)


def explain_errors_llm(errors: Sequence[str]) -> str:
    """Ask the configured LLM to phrase the clarification; falls back to templates."""
    from erp_copilot.copilot.llm_client import draft

    fallback = explain_errors_mock(errors)
    if not fallback:
        return fallback

    prompt = (
        "You are an ERP analytics assistant. The user's request could not be run as given.\n\n"
        "Problems:\n" + "\n".join(f"- {e}" for e in errors) + "\n"
        + "\nAsk the user, in 2-3 plain sentences, for exactly the information needed to proceed. "
        "Do not invent names or numbers."
    )
    try:
        return draft(prompt).text or fallback
    except Exception as exc:
        logger.warning("LLM clarification failed, falling back to templates: %s", exc)
        return fallback


def explain_errors(errors: Sequence[str], mode: str = "mock") -> str:
    """Public API: dispatch to template or LLM phrasing."""
    if mode == "mock":
        return explain_errors_mock(errors)
    return explain_errors_llm(errors)
