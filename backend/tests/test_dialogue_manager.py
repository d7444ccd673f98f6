import asyncio
from datetime import date
from uuid import uuid4

import pytest

import app.ai.session_context as session_context
from app.ai.dialogue import DialogueContextManager
from app.ai.gemini_client import GeminiRequestError
from app.ai.handlers import SLOT_PROMPTS, SLOT_REPROMPTS, GeneralHandler, IncomeHandler, TaxHandler
from app.ai.memory import CONVERSATIONS_COLLECTION, SemanticMemoryStore, SimilarConversation
from app.ai.session_context import SessionContext
from app.services.preference_store import PreferenceStore
from app.services.tax_calculator import CompletionTaxCalculator
from fakes import HashingEmbedder, InMemoryDocumentStore, ScriptedCompletion, default_completion

TAX_QUESTION = "How much should I pay in quarterly taxes?"


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def fixed_today(monkeypatch):
    monkeypatch.setattr(session_context, "_today", lambda: date(2026, 5, 20))


class StubMemory:
    def __init__(self, matches=None, error=None):
        self.matches = matches or []
        self.error = error
        self.stored = []

    async def find_similar(self, user_id, query_text, k=3):
        if self.error is not None:
            raise self.error
        return self.matches[:k]

    async def store_conversation(self, user_id, messages, context):
        self.stored.append((messages, context))
        return "conversation-1"


def _manager(completion=None, store=None, memory=None, require_filing_status=False):
    completion = completion or ScriptedCompletion()
    store = store or InMemoryDocumentStore()
    manager = DialogueContextManager(
        completion=completion,
        memory=memory or SemanticMemoryStore(store, HashingEmbedder()),
        preferences=PreferenceStore(store),
        handlers={
            "tax": TaxHandler(
                completion,
                CompletionTaxCalculator(completion),
                require_filing_status=require_filing_status,
            ),
            "income": IncomeHandler(completion),
            "general": GeneralHandler(completion),
        },
        default_filing_status=None if require_filing_status else "Single",
    )
    return manager, completion, store


def test_missing_state_suspends_then_slot_answer_replays_query() -> None:
    manager, completion, store = _manager()
    user_id = uuid4()

    first = _run(manager.handle_turn(user_id, TAX_QUESTION, SessionContext()))

    assert first.reply == SLOT_PROMPTS["state"]
    assert first.awaiting_slot == "state"
    assert first.context.pending_query == TAX_QUESTION
    assert first.persistence.messages == []
    assert completion.calls == []

    _run(manager.persist_turn(first.persistence))
    assert store.collections.get(CONVERSATIONS_COLLECTION, {}) == {}

    second = _run(manager.handle_turn(user_id, "California", first.context))

    assert second.awaiting_slot is None
    assert second.context.active_state == "California"
    assert second.context.last_query_type == "tax"
    assert second.context_sources["state"] == "slot"
    assert "California" in second.reply
    assert second.workspace["type"] == "taxes"
    # The replayed question reaches the calculator, not the literal slot answer.
    assert completion.calls[-1]["user_message"].endswith(f"Question: {TAX_QUESTION}")
    assert second.persistence.preference_updates == {"state": "California"}

    _run(manager.persist_turn(second.persistence))

    preferences = PreferenceStore(store)
    assert _run(preferences.get_preferences(user_id)) == {"state": "California"}
    assert _run(preferences.get_fact(user_id, "tax", "filingState")) == "California"
    stored = list(store.collections[CONVERSATIONS_COLLECTION].values())
    assert len(stored) == 1
    assert stored[0]["messages"][0] == {"role": "user", "content": TAX_QUESTION}
    assert stored[0]["context"]["state"] == "California"


def test_slot_answer_replay_keeps_value_when_question_has_reset_phrase() -> None:
    manager, _completion, store = _manager()
    user_id = uuid4()
    question = f"New question: {TAX_QUESTION.lower()}"

    first = _run(manager.handle_turn(user_id, question, SessionContext()))
    assert first.awaiting_slot == "state"
    assert first.context.last_query_type == "tax"

    second = _run(manager.handle_turn(user_id, "California", first.context))

    assert second.awaiting_slot is None
    assert second.context.active_state == "California"
    assert second.context_sources["state"] == "slot"
    assert second.reply != SLOT_PROMPTS["state"]
    assert second.persistence.preference_updates == {"state": "California"}

    _run(manager.persist_turn(second.persistence))
    assert _run(PreferenceStore(store).get_preferences(user_id)) == {"state": "California"}


def test_saved_preference_fills_state_on_a_later_session() -> None:
    manager, _completion, store = _manager()
    user_id = uuid4()
    _run(PreferenceStore(store).save_preferences(user_id, {"state": "Oregon"}))

    result = _run(manager.handle_turn(user_id, TAX_QUESTION, SessionContext()))

    assert result.awaiting_slot is None
    assert result.context.active_state == "Oregon"
    assert result.context_sources["state"] == "preferences"
    assert result.used_saved_context is True
    assert "your saved state, Oregon" in result.reply


def test_defaults_are_disclosed() -> None:
    manager, _completion, _store = _manager()

    result = _run(manager.handle_turn(uuid4(), "How much tax do I owe in Texas?", SessionContext()))

    assert result.context.active_quarter == "Q2"
    assert result.context.active_filing_status == "Single"
    assert sorted(result.defaulted_fields) == ["filing_status", "quarter"]
    assert result.used_saved_context is True
    assert "Q2 (the current quarter)" in result.reply
    assert result.persistence.preference_updates == {"state": "Texas"}


def test_topic_change_resets_context() -> None:
    manager, _completion, _store = _manager()
    context = SessionContext(last_query_type="tax", active_state="Texas", active_quarter="Q1")

    result = _run(
        manager.handle_turn(uuid4(), "let's talk about something else, what's a good budget app?", context)
    )

    assert result.context.active_state is None
    assert result.context.active_quarter is None
    assert result.context.last_query_type == "general"
    assert result.workspace is None


def test_follow_up_keeps_session_values() -> None:
    manager, _completion, _store = _manager()
    context = SessionContext(
        last_query_type="tax",
        active_state="Texas",
        active_filing_status="HeadOfHousehold",
        active_quarter="Q1",
    )

    result = _run(manager.handle_turn(uuid4(), "What about Ohio?", context))

    assert result.context.last_query_type == "tax"
    assert result.context.active_state == "Ohio"
    assert result.context.active_filing_status == "HeadOfHousehold"
    assert result.context_sources["filing_status"] == "session"


def test_current_text_outranks_recalled_conversation() -> None:
    recalled = SimilarConversation(
        id="past",
        messages=[
            {"role": "user", "content": "Estimate my taxes for New York"},
            {"role": "assistant", "content": "About $900 for Q1."},
        ],
        context={"state": "New York", "filing_status": "HeadOfHousehold", "quarter": "Q1"},
        similarity=0.92,
    )
    manager, completion, _store = _manager(memory=StubMemory([recalled]))

    result = _run(manager.handle_turn(uuid4(), "Estimate my Q3 taxes for Ohio", SessionContext()))

    assert result.context.active_state == "Ohio"
    assert result.context.active_quarter == "Q3"
    assert result.context.active_filing_status == "HeadOfHousehold"
    assert result.context_sources["filing_status"] == "memory"
    assert result.memory_matches == 1
    assert completion.calls[-1]["prior_messages"][:2] == recalled.messages


def test_low_similarity_memory_is_ignored() -> None:
    recalled = SimilarConversation(
        id="past",
        messages=[{"role": "user", "content": "old"}],
        context={"state": "New York"},
        similarity=0.7,
    )
    manager, completion, _store = _manager(memory=StubMemory([recalled]))

    result = _run(manager.handle_turn(uuid4(), TAX_QUESTION, SessionContext()))

    assert result.awaiting_slot == "state"
    assert result.memory_matches == 0
    assert completion.calls == []


def test_memory_lookup_failure_skips_enrichment() -> None:
    manager, _completion, _store = _manager(memory=StubMemory(error=GeminiRequestError(503, "down")))

    result = _run(manager.handle_turn(uuid4(), "How much tax do I owe in Ohio?", SessionContext()))

    assert result.context.active_state == "Ohio"
    assert result.degraded is False
    assert result.workspace["type"] == "taxes"


def test_provider_failure_returns_degraded_reply_with_context() -> None:
    completion = ScriptedCompletion(error=GeminiRequestError(503, "down"))
    manager, _completion, _store = _manager(completion=completion)
    context = SessionContext(active_state="Ohio", last_query_type="tax")

    result = _run(manager.handle_turn(uuid4(), "What are the tax brackets?", context))

    assert result.degraded is True
    assert "- State: Ohio" in result.reply
    assert "try again" in result.reply
    assert result.context.active_state == "Ohio"
    assert result.awaiting_slot is None


def test_unparseable_slot_answer_reprompts_and_keeps_waiting() -> None:
    manager, completion, store = _manager()
    context = SessionContext().await_slot("state", TAX_QUESTION)

    result = _run(manager.handle_turn(uuid4(), "somewhere sunny", context))

    assert result.reply == SLOT_REPROMPTS["state"]
    assert result.context == context
    assert len(completion.calls) == 1

    _run(manager.persist_turn(result.persistence))
    assert store.writes == []


def test_slot_provider_failure_reprompts() -> None:
    completion = ScriptedCompletion(error=GeminiRequestError(429, "slow down"))
    manager, _completion, _store = _manager(completion=completion)
    context = SessionContext().await_slot("filingStatus", TAX_QUESTION)

    result = _run(manager.handle_turn(uuid4(), "it's complicated", context))

    assert result.awaiting_slot == "filingStatus"
    assert result.reply == SLOT_REPROMPTS["filingStatus"]


def test_slot_answer_resolved_by_provider_fallback() -> None:
    def responder(schema, message):
        if "value" in schema["properties"]:
            return {"value": "California", "confidence": 0.9}
        return default_completion(schema, message)

    manager, completion, _store = _manager(completion=ScriptedCompletion(responder=responder))
    context = SessionContext().await_slot("state", TAX_QUESTION)

    result = _run(manager.handle_turn(uuid4(), "the golden state", context))

    assert result.context.active_state == "California"
    assert result.awaiting_slot is None
    assert completion.calls[0]["user_message"] == "the golden state"


def test_required_filing_status_is_asked_after_state() -> None:
    manager, _completion, store = _manager(require_filing_status=True)
    user_id = uuid4()

    first = _run(manager.handle_turn(user_id, TAX_QUESTION, SessionContext(active_state="Ohio")))
    assert first.awaiting_slot == "filingStatus"

    second = _run(manager.handle_turn(user_id, "I'm married", first.context))
    assert second.context.active_filing_status == "MarriedFilingJointly"
    assert second.awaiting_slot is None

    _run(manager.persist_turn(second.persistence))
    assert _run(PreferenceStore(store).get_preferences(user_id)) == {"filing_status": "MarriedFilingJointly"}


def test_persistence_failures_are_not_raised() -> None:
    manager, _completion, store = _manager()
    user_id = uuid4()
    result = _run(manager.handle_turn(user_id, "How much tax do I owe in Texas?", SessionContext()))

    store.fail_writes = True
    _run(manager.persist_turn(result.persistence))

    assert store.writes == []


def test_input_context_is_not_mutated() -> None:
    manager, _completion, _store = _manager()
    context = SessionContext(active_state="Texas", last_query_type="tax")

    _run(manager.handle_turn(uuid4(), "What about Q3 taxes in Ohio?", context))

    assert context.active_state == "Texas"
    assert context.active_quarter is None
