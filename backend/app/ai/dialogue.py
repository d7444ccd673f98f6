"""Dialogue context manager: one user turn in, one reply and a new context out.

Turn pipeline:
1. slot answer (when a slot is pending) -> replay of the pending query
2. topic-change reset
3. entity extraction
4. semantic memory lookup
5. precedence merge (text > session > memory > preferences > defaults)
6. query classification
7. domain handler (may suspend the turn to ask for a slot)
8. persistence plan, executed by the caller after the reply is sent

The manager keeps no per-session state; the context passed in is never mutated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from app.ai.gemini_client import GeminiError
from app.ai.handlers import SLOT_REPROMPTS, HandlerResult
from app.ai.memory import best_usable_match, history_slice
from app.ai.prompt import FILING_STATUS_LABELS, SLOT_PARSER_PROMPTS, SLOT_VALUE_SCHEMAS, describe_context
from app.ai.query_rules import classify_query, is_topic_change
from app.ai.session_context import CONTEXT_ATTRIBUTES, SessionContext, merge_context
from app.services.document_store import DocumentStoreError
from app.services.entity_extractor import extract, normalize_filing_status, normalize_state
from app.services.preference_store import FILING_STATE_FACT_KEY, TAX_FACT_CATEGORY

logger = logging.getLogger(__name__)

# Slot name -> context field name used by merge and preferences.
SLOT_FIELDS = {
    "state": "state",
    "filingStatus": "filing_status",
}
SAVED_SOURCES = frozenset({"memory", "preferences", "default"})
PERSISTED_FIELDS = ("state", "filing_status")
STORED_HISTORY_TAIL = 4


@dataclass
class PersistencePlan:
    """Writes to run after the reply is returned."""

    user_id: str
    messages: list[dict[str, str]] = field(default_factory=list)
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    preference_updates: dict[str, str] = field(default_factory=dict)


@dataclass
class TurnResult:
    reply: str
    context: SessionContext
    persistence: PersistencePlan
    workspace: dict[str, Any] | None = None
    context_sources: dict[str, str] = field(default_factory=dict)
    defaulted_fields: list[str] = field(default_factory=list)
    used_saved_context: bool = False
    memory_matches: int = 0
    degraded: bool = False

    @property
    def awaiting_slot(self) -> str | None:
        return self.context.awaiting_slot


def _degraded_reply(query_type: str, context: SessionContext) -> str:
    if query_type == "general":
        return "I couldn't reach the assistant service just now. Please try again in a moment."
    return (
        "I couldn't finish that answer because the assistant service is unavailable right now. "
        "Here's what I have for you so far:\n"
        f"{describe_context(context)}\n"
        "Please try again in a moment."
    )


def _disclosure(sources: dict[str, str], context: SessionContext) -> str:
    notes = []
    if sources.get("quarter") == "default":
        notes.append(f"{context.active_quarter} (the current quarter)")
    if sources.get("filing_status") == "default":
        notes.append(f"a {FILING_STATUS_LABELS[context.active_filing_status]} filing status")
    if sources.get("state") == "preferences":
        notes.append(f"your saved state, {context.active_state}")
    if not notes:
        return ""
    return f"\n\nI used {' and '.join(notes)}. Let me know if that should be different."


class DialogueContextManager:
    """Resolves context for each turn and routes it to a domain handler."""

    def __init__(
        self,
        *,
        completion: Any,
        memory: Any,
        preferences: Any,
        handlers: dict[str, Any],
        similarity_threshold: float = 0.7,
        top_k: int = 3,
        history_slice_size: int = 4,
        history_limit: int = 6,
        default_filing_status: str | None = "Single",
    ) -> None:
        self.completion = completion
        self.memory = memory
        self.preferences = preferences
        self.handlers = handlers
        self.similarity_threshold = similarity_threshold
        self.top_k = top_k
        self.history_slice_size = history_slice_size
        self.history_limit = history_limit
        self.default_filing_status = default_filing_status

    async def handle_turn(
        self,
        user_id: UUID | str,
        text: str,
        context: SessionContext | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> TurnResult:
        context = context or SessionContext()
        history = list(history or [])[-self.history_limit:] if self.history_limit > 0 else []
        message = text.strip()
        slot_sources: dict[str, str] = {}

        if context.awaiting_slot is not None:
            slot = context.awaiting_slot
            value = await self._resolve_slot_answer(slot, message)
            if value is None:
                # Stay in the slot sub-dialogue; never default a slot the user is being asked for.
                return TurnResult(
                    reply=SLOT_REPROMPTS[slot],
                    context=context,
                    persistence=PersistencePlan(user_id=str(user_id)),
                )

            slot_field = SLOT_FIELDS[slot]
            pending_query = context.pending_query or message
            context = context.with_updates(**{CONTEXT_ATTRIBUTES[slot_field]: value}).clear_slot()
            slot_sources[slot_field] = "slot"
            return await self._run_query(user_id, pending_query, context, history, slot_sources, replay=True)

        return await self._run_query(user_id, message, context, history, slot_sources)

    async def _run_query(
        self,
        user_id: UUID | str,
        text: str,
        context: SessionContext,
        history: list[dict[str, str]],
        slot_sources: dict[str, str],
        replay: bool = False,
    ) -> TurnResult:
        # A replayed pending query continues the suspended turn.
        if not replay and is_topic_change(text, context.last_query_type):
            logger.info("Topic change detected; resetting session context")
            context = SessionContext()
            history = []
            slot_sources = {}

        extracted = extract(text)

        try:
            matches = await self.memory.find_similar(user_id, text, k=self.top_k)
        except (GeminiError, DocumentStoreError):
            logger.warning("Semantic memory lookup failed; continuing without it", exc_info=True)
            matches = []
        usable_matches = [match for match in matches if match.similarity > self.similarity_threshold]
        best = best_usable_match(matches, self.similarity_threshold)

        enriched_history = history
        recalled = None
        if best is not None:
            recalled = best.context
            enriched_history = [*history_slice(best, self.history_slice_size), *history]

        query_type = classify_query(
            text,
            previous_type=context.last_query_type,
            has_entities=not extracted.is_empty(),
        )

        apply_profile = query_type == "tax"
        saved_preferences, fact_state = (None, None)
        if apply_profile:
            saved_preferences, fact_state = await self._load_profile(user_id)

        merged, sources = merge_context(
            context,
            extracted,
            recalled=recalled,
            preferences=saved_preferences,
            fact_state=fact_state,
            apply_profile=apply_profile,
            default_filing_status=self.default_filing_status,
        )
        sources.update(slot_sources)
        merged = merged.with_updates(last_query_type=query_type)

        degraded = False
        handler = self.handlers[query_type]
        try:
            outcome: HandlerResult = await handler.handle(merged, enriched_history, text)
        except GeminiError:
            logger.warning("Domain handler %s failed; returning degraded reply", query_type, exc_info=True)
            outcome = HandlerResult(reply_text=_degraded_reply(query_type, merged))
            degraded = True

        suspended = outcome.required_slot is not None
        final_context = merged.await_slot(outcome.required_slot, text) if suspended else merged

        reply = outcome.reply_text
        if not suspended and not degraded and query_type == "tax":
            reply = f"{reply}{_disclosure(sources, final_context)}"

        preference_updates = {
            name: getattr(final_context, CONTEXT_ATTRIBUTES[name])
            for name in PERSISTED_FIELDS
            if sources.get(name) in {"text", "slot"}
        }

        stored_messages: list[dict[str, str]] = []
        if not suspended:
            stored_messages = [
                *history[-STORED_HISTORY_TAIL:],
                {"role": "user", "content": text},
                {"role": "assistant", "content": reply},
            ]

        return TurnResult(
            reply=reply,
            context=final_context,
            workspace=outcome.workspace_payload,
            context_sources=sources,
            defaulted_fields=[name for name, source in sources.items() if source == "default"],
            used_saved_context=any(source in SAVED_SOURCES for source in sources.values()),
            memory_matches=len(usable_matches),
            degraded=degraded,
            persistence=PersistencePlan(
                user_id=str(user_id),
                messages=stored_messages,
                context_snapshot=final_context.snapshot(),
                preference_updates=preference_updates,
            ),
        )

    async def _resolve_slot_answer(self, slot: str, text: str) -> str | None:
        """Extractor first, then one constrained completion call."""
        extracted = extract(text)
        if slot == "state" and extracted.states:
            return extracted.states[0]
        if slot == "filingStatus" and extracted.filing_statuses:
            return extracted.filing_statuses[0]

        try:
            result = await self.completion.complete(
                SLOT_PARSER_PROMPTS[slot],
                [],
                text,
                SLOT_VALUE_SCHEMAS[slot],
            )
        except GeminiError:
            logger.warning("Slot fallback parse failed for %s", slot, exc_info=True)
            return None

        raw_value = str(result.get("value") or "")
        if slot == "state":
            return normalize_state(raw_value)
        return normalize_filing_status(raw_value)

    async def _load_profile(self, user_id: UUID | str) -> tuple[dict[str, Any] | None, str | None]:
        try:
            saved = await self.preferences.get_preferences(user_id)
            fact_state = None
            if not saved or not saved.get("state"):
                fact_state = await self.preferences.get_fact(
                    user_id,
                    TAX_FACT_CATEGORY,
                    FILING_STATE_FACT_KEY,
                )
        except DocumentStoreError:
            logger.warning("Preference lookup failed; continuing without saved preferences", exc_info=True)
            return None, None
        return saved, fact_state

    async def persist_turn(self, plan: PersistencePlan) -> None:
        """Store the conversation and resolved preferences; failures are logged only."""
        if plan.messages:
            conversation_id = await self.memory.store_conversation(
                plan.user_id,
                plan.messages,
                plan.context_snapshot,
            )
            if conversation_id is None:
                logger.info("Conversation for user %s was not stored", plan.user_id)

        if plan.preference_updates:
            await self.preferences.save_preferences(plan.user_id, plan.preference_updates)
            state = plan.preference_updates.get("state")
            if state:
                await self.preferences.store_fact(
                    plan.user_id,
                    TAX_FACT_CATEGORY,
                    FILING_STATE_FACT_KEY,
                    state,
                )
