"""
Deal analysis: ask the text completion model for pain points and next steps.

The model's lists are cleaned with :func:`clean_deal_analysis` and later
merged into the stored deal with ``merge_and_dedupe``, so running the
analysis repeatedly never piles up near-duplicate entries.
"""

import json
import logging
from typing import Any, Optional

from connectors.models import CanonicalDeal
from services.deduplication import clean_deal_analysis
from services.text_completion import TextCompletion

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a sales analyst. Read the deal information and \
the conversation notes, then reply with ONLY a JSON object of the form:
{"pain_points": [string], "next_steps": [string], "blockers": [string], "opportunities": [string]}
Keep every entry short and specific. Do not repeat entries already listed."""


def build_analysis_prompt(deal: CanonicalDeal, context: str) -> str:
    lines: list[str] = ["DEAL INFORMATION:"]
    lines.append(f"Title: {deal.title or 'Untitled'}")
    lines.append(f"Company: {deal.company_name or 'Unknown'}")
    lines.append(f"Stage: {deal.stage.value}")
    if deal.value_amount is not None:
        lines.append(f"Value: {deal.value_amount:,.2f} {deal.value_currency}")
    else:
        lines.append("Value: Not specified")
    lines.append(f"Close Date: {deal.close_date.isoformat() if deal.close_date else 'Not set'}")

    if deal.pain_points:
        lines.append("\nIDENTIFIED PAIN POINTS:")
        lines.extend(f"{i}. {p}" for i, p in enumerate(deal.pain_points, 1))
    if deal.next_steps:
        lines.append("\nNEXT STEPS:")
        lines.extend(f"{i}. {s}" for i, s in enumerate(deal.next_steps, 1))
    if deal.contacts:
        lines.append("\nKEY CONTACTS:")
        for contact in deal.contacts:
            entry = f"- {contact.name}"
            if contact.email:
                entry += f" ({contact.email})"
            if contact.role:
                entry += f" - {contact.role}"
            if contact.is_decision_maker:
                entry += " [Decision Maker]"
            if contact.is_primary:
                entry += " [Primary Contact]"
            lines.append(entry)

    lines.append("\nNOTES:")
    lines.append(context.strip() or "No notes available.")
    return "\n".join(lines)


def parse_analysis_response(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model reply; raises ValueError if there is none."""
    # Try to extract JSON if wrapped in markdown code blocks
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        raise ValueError(f"Analysis response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Analysis response is not a JSON object")
    return data


async def analyze_deal(
    deal: CanonicalDeal, context: str, completion: TextCompletion
) -> dict[str, Any]:
    """Run the analysis and return the cleaned payload."""
    reply = await completion.complete(build_analysis_prompt(deal, context), system=SYSTEM_PROMPT)
    analysis = clean_deal_analysis(parse_analysis_response(reply))
    logger.info(
        "Analyzed deal %s",
        deal.id,
        extra={
            "pain_points": len(analysis.get("pain_points") or []),
            "next_steps": len(analysis.get("next_steps") or []),
        },
    )
    return analysis


def analysis_lists(analysis: Optional[dict[str, Any]]) -> tuple[list[str], list[str]]:
    """(pain_points, next_steps) from an analysis payload, tolerating missing keys."""
    if not analysis:
        return [], []
    pain_points = [p for p in analysis.get("pain_points") or [] if isinstance(p, str)]
    next_steps = [s for s in analysis.get("next_steps") or [] if isinstance(s, str)]
    return pain_points, next_steps
