"""Quarterly tax estimation behind the calculator interface used by the tax handler.

The arithmetic is delegated to the completion provider; this module resolves the
period, validates the structured result, and normalizes money to 2 decimals.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from app.ai.gemini_client import GeminiResponseError
from app.ai.prompt import FILING_STATUS_LABELS, TAX_ESTIMATE_SCHEMA, TAX_ESTIMATION_PROMPT, build_system_prompt

MONEY_QUANT = Decimal("0.01")

_QUARTER_MONTHS = {
    "Q1": (1, 3, 31),
    "Q2": (4, 6, 30),
    "Q3": (7, 9, 30),
    "Q4": (10, 12, 31),
}


def quantize_amount(value: Decimal) -> Decimal:
    """Normalize money values to 2-decimal precision."""
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def quarter_date_range(tax_year: int, quarter: str) -> tuple[date, date]:
    """Calendar date range covered by `quarter` of `tax_year`."""
    start_month, end_month, end_day = _QUARTER_MONTHS[quarter]
    return date(tax_year, start_month, 1), date(tax_year, end_month, end_day)


class TaxEstimate(BaseModel):
    estimated_tax: Decimal = Field(ge=Decimal("0"))
    federal_tax: Decimal = Field(ge=Decimal("0"))
    state_tax: Decimal = Field(ge=Decimal("0"))
    self_employment_tax: Decimal | None = Field(default=None, ge=Decimal("0"))
    tax_rate: Decimal | None = None
    explanation: str = ""


class CompletionTaxCalculator:
    """Tax calculator that asks the completion provider for a structured estimate."""

    def __init__(self, completion: Any) -> None:
        self.completion = completion

    async def estimate(
        self,
        context: Any,
        history: list[dict[str, str]],
        question: str,
    ) -> dict[str, Any]:
        quarter = context.active_quarter or "Q1"
        start_date, end_date = quarter_date_range(context.active_tax_year, quarter)
        filing_status = FILING_STATUS_LABELS.get(context.active_filing_status or "Single", "Single")

        request = (
            "Calculate the estimated quarterly tax payment.\n"
            f"State: {context.active_state}\n"
            f"Filing status: {filing_status}\n"
            f"Period: {quarter} {context.active_tax_year} ({start_date.isoformat()} to {end_date.isoformat()})\n"
            f"Question: {question}"
        )

        raw = await self.completion.complete(
            build_system_prompt(TAX_ESTIMATION_PROMPT, context),
            history,
            request,
            TAX_ESTIMATE_SCHEMA,
        )

        try:
            parsed = TaxEstimate.model_validate(raw)
        except ValidationError as exc:
            raise GeminiResponseError("Tax estimate failed validation") from exc

        result: dict[str, Any] = {
            "estimated_tax": quantize_amount(parsed.estimated_tax),
            "federal_tax": quantize_amount(parsed.federal_tax),
            "state_tax": quantize_amount(parsed.state_tax),
            "self_employment_tax": (
                quantize_amount(parsed.self_employment_tax)
                if parsed.self_employment_tax is not None
                else None
            ),
            "tax_rate": parsed.tax_rate,
            "explanation": parsed.explanation.strip(),
            "period_start": start_date,
            "period_end": end_date,
        }
        return result
