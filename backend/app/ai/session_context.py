"""Immutable per-turn session context for the dialogue manager.

The context is a value: each turn receives one and returns a new one. The
slot-fill continuation is an explicit tagged variant, so "no slot pending" is
always stated rather than inferred from a missing flag.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.services.entity_extractor import (
    QUARTERS,
    ExtractedEntities,
    FilingStatus,
    Quarter,
    normalize_filing_status,
    normalize_state,
)

QueryType = Literal["tax", "income", "general"]
SlotName = Literal["state", "filingStatus"]

CONTEXT_ATTRIBUTES: dict[str, str] = {
    "state": "active_state",
    "filing_status": "active_filing_status",
    "quarter": "active_quarter",
    "tax_year": "active_tax_year",
}


def _today() -> date:
    """Wrapper for deterministic tests."""
    return date.today()


def current_year() -> int:
    return _today().year


def current_quarter() -> str:
    return f"Q{(_today().month - 1) // 3 + 1}"


class IdleSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["idle"] = "idle"


class AwaitingSlot(BaseModel):
    """The next user turn answers `slot`; `pending_query` is replayed afterwards."""

    model_config = ConfigDict(frozen=True)

    status: Literal["awaiting"] = "awaiting"
    slot: SlotName
    pending_query: str = Field(min_length=1)


SlotState = Annotated[Union[IdleSlot, AwaitingSlot], Field(discriminator="status")]


class SessionContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_state: str | None = None
    active_filing_status: FilingStatus | None = None
    active_quarter: Quarter | None = None
    active_tax_year: int = Field(default_factory=current_year)
    last_query_type: QueryType | None = None
    slot: SlotState = Field(default_factory=IdleSlot)

    @property
    def awaiting_slot(self) -> str | None:
        return self.slot.slot if isinstance(self.slot, AwaitingSlot) else None

    @property
    def pending_query(self) -> str | None:
        return self.slot.pending_query if isinstance(self.slot, AwaitingSlot) else None

    def with_updates(self, **changes: Any) -> "SessionContext":
        """Return a validated copy with `changes` applied."""
        return SessionContext.model_validate({**self.model_dump(), **changes})

    def await_slot(self, slot: str, pending_query: str) -> "SessionContext":
        return self.with_updates(slot={"status": "awaiting", "slot": slot, "pending_query": pending_query})

    def clear_slot(self) -> "SessionContext":
        return self.with_updates(slot={"status": "idle"})

    def snapshot(self) -> dict[str, Any]:
        """Fields worth keeping with a stored conversation for later recall."""
        return {
            "state": self.active_state,
            "filing_status": self.active_filing_status,
            "quarter": self.active_quarter,
            "tax_year": self.active_tax_year,
            "query_type": self.last_query_type,
        }


def _first(values: list[Any]) -> Any | None:
    return values[0] if values else None


def _pick(candidates: list[tuple[str, Any]]) -> tuple[Any | None, str | None]:
    for source, value in candidates:
        if value is not None:
            return value, source
    return None, None


def merge_context(
    context: SessionContext,
    extracted: ExtractedEntities,
    *,
    recalled: dict[str, Any] | None = None,
    preferences: dict[str, Any] | None = None,
    fact_state: str | None = None,
    apply_profile: bool = False,
    default_filing_status: str | None = "Single",
) -> tuple[SessionContext, dict[str, str]]:
    """Resolve each context field from its highest-precedence source.

    Order per field: current text, active session, recalled conversation,
    saved preferences, domain default. Saved preferences and defaults only
    apply when `apply_profile` is set.
    """
    recalled = recalled or {}
    preferences = preferences or {}

    layers: dict[str, list[tuple[str, Any]]] = {
        "state": [
            ("text", _first(extracted.states)),
            ("session", context.active_state),
            ("memory", normalize_state(recalled.get("state"))),
        ],
        "filing_status": [
            ("text", _first(extracted.filing_statuses)),
            ("session", context.active_filing_status),
            ("memory", normalize_filing_status(recalled.get("filing_status"))),
        ],
        "quarter": [
            ("text", _first(extracted.quarters)),
            ("session", context.active_quarter),
            ("memory", recalled.get("quarter") if recalled.get("quarter") in QUARTERS else None),
        ],
        "tax_year": [
            ("text", _first(extracted.years)),
            ("session", context.active_tax_year),
        ],
    }

    if apply_profile:
        layers["state"].append(
            ("preferences", normalize_state(preferences.get("state")) or normalize_state(fact_state))
        )
        layers["filing_status"].append(
            ("preferences", normalize_filing_status(preferences.get("filing_status")))
        )
        layers["filing_status"].append(("default", default_filing_status))
        layers["quarter"].append(("default", current_quarter()))

    changes: dict[str, Any] = {}
    sources: dict[str, str] = {}
    for name, candidates in layers.items():
        value, source = _pick(candidates)
        changes[CONTEXT_ATTRIBUTES[name]] = value
        if source is not None:
            sources[name] = source

    if changes["active_tax_year"] is None:
        changes["active_tax_year"] = current_year()

    return context.with_updates(**changes), sources
