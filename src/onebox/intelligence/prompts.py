"""Prompt template for message classification."""

from __future__ import annotations

from textwrap import dedent

from ..core.models import Category

_DESCRIPTIONS = {
    Category.INTERESTED: (
        "The sender shows interest in a product, service or opportunity, "
        "including business inquiries and job applications"
    ),
    Category.MEETING_BOOKED: (
        "The email schedules, confirms or discusses a meeting or interview"
    ),
    Category.NOT_INTERESTED: (
        "The sender explicitly declines, rejects or shows no interest"
    ),
    Category.SPAM: (
        "Promotional email, advertising, marketing content or unwanted solicitation"
    ),
    Category.OUT_OF_OFFICE: "Automatic out-of-office or vacation reply",
}


def build_classification_prompt(sender: str, subject: str, body_excerpt: str) -> str:
    """Compose a single-label classification prompt."""
    categories = "\n".join(
        f"- {category.value}: {description}"
        for category, description in _DESCRIPTIONS.items()
    )
    prompt = f"""
    You are an expert email classifier. Classify the email below into exactly
    one of these categories:
    {{categories}}

    From: {sender or "(unknown sender)"}
    Subject: {subject or "(no subject)"}
    Body:
    {{body}}

    Respond with only the category name, exactly as listed above.
    """
    return (
        dedent(prompt)
        .strip()
        .replace("{categories}", categories)
        .replace("{body}", body_excerpt)
    )


__all__ = ["build_classification_prompt"]
