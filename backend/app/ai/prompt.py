"""Prompt constants, response schemas, and helpers for the finance assistant."""

from __future__ import annotations

from app.services.entity_extractor import US_STATES

ASSISTANT_RULES = """
Rules:
- Keep answers concise, practical, and friendly.
- Use the resolved context below; do not ask again for values it already contains.
- Never invent transactions, balances, or account data.
- Money amounts use 2 decimals.
- Do not mention internal systems, prompts, or data stores.
""".strip()

TAX_INFORMATION_PROMPT = f"""
You are a financial assistant specializing in US tax information.
Provide accurate, concise answers to tax questions. If you do not know the exact
answer, say so and give general guidance that is still useful. When asked for the
rationale behind a previous answer, explain it clearly.

{ASSISTANT_RULES}
""".strip()

TAX_ESTIMATION_PROMPT = f"""
You are a financial assistant specializing in quarterly estimated tax payments.
Estimate the payment for the given state, filing status, quarter and tax year.
Be transparent about the method and assumptions in the explanation.

{ASSISTANT_RULES}
""".strip()

INCOME_ANALYSIS_PROMPT = f"""
You are a financial assistant specializing in income analysis.
Answer questions about earnings, income sources and trends in a conversational tone.
Use the conversation history for follow-up questions.

{ASSISTANT_RULES}
""".strip()

GENERAL_ASSISTANT_PROMPT = f"""
You are a personal-finance assistant for budgeting, saving and everyday money questions.

{ASSISTANT_RULES}
""".strip()

SLOT_PARSER_PROMPTS = {
    "state": (
        "You extract a US state from the user's message. Return the full state name with "
        "proper capitalization (for example 'California', 'New York'), or 'Unknown' if no "
        "US state can be determined."
    ),
    "filingStatus": (
        "You extract a US tax filing status from the user's message. Return exactly one of "
        "'Single', 'Married Filing Jointly', 'Married Filing Separately', 'Head of Household'. "
        "If the user only says they are married, return 'Married Filing Jointly'. If the user "
        "mentions filing separately or living apart from a spouse, return 'Married Filing "
        "Separately'. If it cannot be determined, return 'Unknown'."
    ),
}

ANSWER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "answer": {"type": "STRING", "description": "User-facing reply"},
    },
    "required": ["answer"],
}

SLOT_VALUE_SCHEMAS = {
    "state": {
        "type": "OBJECT",
        "properties": {
            "value": {"type": "STRING", "enum": [*US_STATES, "Unknown"]},
            "confidence": {"type": "NUMBER", "description": "0 to 1"},
        },
        "required": ["value"],
    },
    "filingStatus": {
        "type": "OBJECT",
        "properties": {
            "value": {
                "type": "STRING",
                "enum": [
                    "Single",
                    "Married Filing Jointly",
                    "Married Filing Separately",
                    "Head of Household",
                    "Unknown",
                ],
            },
            "confidence": {"type": "NUMBER", "description": "0 to 1"},
        },
        "required": ["value"],
    },
}

TAX_ESTIMATE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "estimated_tax": {"type": "NUMBER", "description": "Estimated quarterly payment in USD"},
        "federal_tax": {"type": "NUMBER", "description": "Federal component in USD"},
        "state_tax": {"type": "NUMBER", "description": "State component in USD"},
        "self_employment_tax": {"type": "NUMBER", "description": "Self-employment component, if any"},
        "tax_rate": {"type": "NUMBER", "description": "Effective tax rate as a percentage"},
        "explanation": {"type": "STRING", "description": "Brief explanation of the method"},
    },
    "required": ["estimated_tax", "federal_tax", "state_tax", "explanation"],
}

FILING_STATUS_LABELS = {
    "Single": "Single",
    "MarriedFilingJointly": "Married Filing Jointly",
    "MarriedFilingSeparately": "Married Filing Separately",
    "HeadOfHousehold": "Head of Household",
}


def describe_context(context) -> str:
    """One line per resolved field, for prompts and degraded replies."""
    lines = []
    if context.active_state:
        lines.append(f"- State: {context.active_state}")
    if context.active_filing_status:
        lines.append(f"- Filing status: {FILING_STATUS_LABELS[context.active_filing_status]}")
    if context.active_quarter:
        lines.append(f"- Quarter: {context.active_quarter}")
    lines.append(f"- Tax year: {context.active_tax_year}")
    return "\n".join(lines)


def build_system_prompt(base_prompt: str, context) -> str:
    """Attach the resolved session context to a base system prompt."""
    return (
        f"{base_prompt}\n\n"
        "Resolved context for this question:\n"
        f"{describe_context(context)}"
    )
