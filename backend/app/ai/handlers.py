"""Domain handlers for tax, income, and general questions.

A handler receives the merged session context, the enriched dialogue history,
and the raw question. It either answers or names the slot it still needs; a
handler that needs a slot must not call the tax calculator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from app.ai.prompt import (
    ANSWER_SCHEMA,
    FILING_STATUS_LABELS,
    GENERAL_ASSISTANT_PROMPT,
    INCOME_ANALYSIS_PROMPT,
    TAX_INFORMATION_PROMPT,
    build_system_prompt,
)
from app.ai.session_context import SessionContext

SLOT_PROMPTS = {
    "state": "Which state do you file taxes in? For example: California, Texas, or New York.",
    "filingStatus": (
        "What's your filing status? Single, Married Filing Jointly, "
        "Married Filing Separately, or Head of Household?"
    ),
}

SLOT_REPROMPTS = {
    "state": (
        "Sorry, I couldn't tell which state you meant. Please reply with the full name of "
        "the US state you file in, like \"Ohio\" or \"New Jersey\"."
    ),
    "filingStatus": (
        "Sorry, I couldn't tell your filing status. Please reply with one of: Single, "
        "Married Filing Jointly, Married Filing Separately, or Head of Household."
    ),
}

CALCULATION_INTENT = re.compile(
    r"\b(?:how much|estimate[sd]?|calculate|owe|pay(?:ment)?s?|amount|liability|what will)\b",
    re.IGNORECASE,
)


@dataclass
class HandlerResult:
    """Reply produced by a domain handler, or the slot it still needs."""

    reply_text: str
    workspace_payload: dict[str, Any] | None = None
    required_slot: str | None = None


def _format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


async def _answer(
    completion: Any,
    base_prompt: str,
    context: SessionContext,
    history: list[dict[str, str]],
    question: str,
) -> str:
    result = await completion.complete(
        build_system_prompt(base_prompt, context),
        history,
        question,
        ANSWER_SCHEMA,
    )
    return str(result.get("answer") or "").strip()


class TaxHandler:
    """Answers tax questions; estimates route through the tax calculator."""

    def __init__(self, completion: Any, calculator: Any, require_filing_status: bool = False) -> None:
        self.completion = completion
        self.calculator = calculator
        self.require_filing_status = require_filing_status

    async def handle(
        self,
        context: SessionContext,
        history: list[dict[str, str]],
        question: str,
    ) -> HandlerResult:
        if not context.active_state:
            return HandlerResult(reply_text=SLOT_PROMPTS["state"], required_slot="state")

        if not context.active_filing_status and self.require_filing_status:
            return HandlerResult(reply_text=SLOT_PROMPTS["filingStatus"], required_slot="filingStatus")

        if not CALCULATION_INTENT.search(question):
            answer = await _answer(self.completion, TAX_INFORMATION_PROMPT, context, history, question)
            return HandlerResult(
                reply_text=answer or "I couldn't find information about that tax question.",
                workspace_payload={
                    "type": "taxInfo",
                    "title": "Tax Information",
                    "data": {
                        "state": context.active_state,
                        "tax_year": context.active_tax_year,
                    },
                },
            )

        estimate = await self.calculator.estimate(context, history, question)
        period = f"{context.active_quarter} {context.active_tax_year}"
        filing_label = FILING_STATUS_LABELS.get(context.active_filing_status or "Single", "Single")

        reply = (
            f"Based on your situation in {context.active_state} ({filing_label}) for {period}, "
            f"I estimate you should pay {_format_money(estimate['estimated_tax'])} in quarterly "
            f"estimated taxes. This includes {_format_money(estimate['federal_tax'])} in federal "
            f"taxes and {_format_money(estimate['state_tax'])} in state taxes."
        )
        if estimate.get("explanation"):
            reply = f"{reply} {estimate['explanation']}"

        return HandlerResult(
            reply_text=reply,
            workspace_payload={
                "type": "taxes",
                "title": f"{context.active_quarter} Tax Estimation",
                "data": {
                    **estimate,
                    "period": context.active_quarter,
                    "tax_year": context.active_tax_year,
                    "state": context.active_state,
                    "filing_status": context.active_filing_status,
                },
            },
        )


class IncomeHandler:
    def __init__(self, completion: Any) -> None:
        self.completion = completion

    async def handle(
        self,
        context: SessionContext,
        history: list[dict[str, str]],
        question: str,
    ) -> HandlerResult:
        answer = await _answer(self.completion, INCOME_ANALYSIS_PROMPT, context, history, question)
        return HandlerResult(
            reply_text=answer or "I couldn't analyze your income for that question.",
            workspace_payload={
                "type": "incomeTrend",
                "title": "Income Analysis",
                "data": {
                    "tax_year": context.active_tax_year,
                    "quarter": context.active_quarter,
                },
            },
        )


class GeneralHandler:
    def __init__(self, completion: Any) -> None:
        self.completion = completion

    async def handle(
        self,
        context: SessionContext,
        history: list[dict[str, str]],
        question: str,
    ) -> HandlerResult:
        answer = await _answer(self.completion, GENERAL_ASSISTANT_PROMPT, context, history, question)
        return HandlerResult(
            reply_text=answer
            or "Could you share a bit more detail about what you'd like to know about your finances?"
        )
