import asyncio
from uuid import uuid4

import pytest

from app.ai.gemini_client import GeminiRequestError
from app.ai.memory import (
    CONVERSATIONS_COLLECTION,
    SemanticMemoryStore,
    SimilarConversation,
    best_usable_match,
    cosine_similarity,
    history_slice,
    join_transcript,
)
from fakes import HashingEmbedder, InMemoryDocumentStore


def _run(coro):
    return asyncio.run(coro)


TAX_MESSAGES = [
    {"role": "user", "content": "How much should I pay in quarterly taxes in Ohio?"},
    {"role": "assistant", "content": "Based on your Ohio income, about $1,250.50 for Q2."},
]
BUDGET_MESSAGES = [
    {"role": "user", "content": "Can you suggest a grocery budget?"},
    {"role": "assistant", "content": "Try keeping groceries near $400 a month."},
]


def test_join_transcript_renders_role_prefixed_lines() -> None:
    assert join_transcript(TAX_MESSAGES) == (
        "user: How much should I pay in quarterly taxes in Ohio?\n"
        "assistant: Based on your Ohio income, about $1,250.50 for Q2."
    )


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)
    assert cosine_similarity([], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0], [1.0, 1.0]) == 0.0


def test_stored_conversation_is_found_first_with_same_transcript() -> None:
    store = InMemoryDocumentStore()
    memory = SemanticMemoryStore(store, HashingEmbedder())
    user_id = uuid4()

    budget_id = _run(memory.store_conversation(user_id, BUDGET_MESSAGES, {"query_type": "general"}))
    tax_id = _run(memory.store_conversation(user_id, TAX_MESSAGES, {"state": "Ohio", "quarter": "Q2"}))

    matches = _run(memory.find_similar(user_id, join_transcript(TAX_MESSAGES), k=3))

    assert budget_id and tax_id
    assert matches[0].id == tax_id
    assert matches[0].similarity == pytest.approx(1.0)
    assert matches[0].context == {"state": "Ohio", "quarter": "Q2"}
    assert matches[0].messages == TAX_MESSAGES
    assert matches[1].similarity < matches[0].similarity


def test_find_similar_with_no_history_is_empty_without_embedding() -> None:
    embedder = HashingEmbedder()
    memory = SemanticMemoryStore(InMemoryDocumentStore(), embedder)

    assert _run(memory.find_similar(uuid4(), "quarterly taxes")) == []
    assert embedder.calls == []


def test_find_similar_is_scoped_to_the_user_and_limited_to_k() -> None:
    memory = SemanticMemoryStore(InMemoryDocumentStore(), HashingEmbedder())
    user_id = uuid4()
    other_user = uuid4()

    for _ in range(4):
        _run(memory.store_conversation(user_id, TAX_MESSAGES, {}))
    _run(memory.store_conversation(other_user, BUDGET_MESSAGES, {}))

    assert len(_run(memory.find_similar(user_id, "taxes", k=2))) == 2
    assert _run(memory.find_similar(other_user, "taxes", k=10))[0].messages == BUDGET_MESSAGES


def test_embedding_failure_skips_persistence() -> None:
    store = InMemoryDocumentStore()
    memory = SemanticMemoryStore(store, HashingEmbedder(error=GeminiRequestError(503, "down")))

    assert _run(memory.store_conversation(uuid4(), TAX_MESSAGES, {})) is None
    assert store.collections.get(CONVERSATIONS_COLLECTION, {}) == {}


def test_store_failure_returns_none() -> None:
    store = InMemoryDocumentStore()
    store.fail_writes = True

    assert _run(SemanticMemoryStore(store, HashingEmbedder()).store_conversation(uuid4(), TAX_MESSAGES, {})) is None


def test_blank_messages_are_dropped_before_storage() -> None:
    store = InMemoryDocumentStore()
    memory = SemanticMemoryStore(store, HashingEmbedder())

    assert _run(memory.store_conversation(uuid4(), [{"role": "user", "content": "   "}], {})) is None

    conversation_id = _run(
        memory.store_conversation(
            uuid4(),
            [
                {"role": "user", "content": "  hi  "},
                {"role": "assistant", "content": ""},
                {"role": "system", "content": "x"},
            ],
            {},
        )
    )
    record = store.collections[CONVERSATIONS_COLLECTION][conversation_id]
    assert record["messages"] == [{"role": "user", "content": "  hi  "}, {"role": "system", "content": "x"}]
    assert len(record["embedding"]) == 64
    assert record["timestamp"]


def test_transcript_with_system_message_is_its_own_best_match() -> None:
    store = InMemoryDocumentStore()
    embedder = HashingEmbedder()
    memory = SemanticMemoryStore(store, embedder)
    user_id = uuid4()
    messages = [{"role": "system", "content": "You help with household budgets."}, *TAX_MESSAGES]

    conversation_id = _run(memory.store_conversation(user_id, messages, {"state": "Ohio"}))
    _run(memory.store_conversation(user_id, BUDGET_MESSAGES, {}))

    assert embedder.calls[0] == join_transcript(messages)
    matches = _run(memory.find_similar(user_id, join_transcript(messages)))
    assert matches[0].id == conversation_id
    assert matches[0].messages == messages
    assert matches[0].similarity == pytest.approx(1.0)


def test_query_embedding_failure_propagates() -> None:
    store = InMemoryDocumentStore()
    user_id = uuid4()
    _run(SemanticMemoryStore(store, HashingEmbedder()).store_conversation(user_id, TAX_MESSAGES, {}))

    failing = SemanticMemoryStore(store, HashingEmbedder(error=GeminiRequestError(429, "slow down")))
    with pytest.raises(GeminiRequestError):
        _run(failing.find_similar(user_id, "taxes"))


def test_best_usable_match_is_strictly_above_threshold() -> None:
    high = SimilarConversation(id="a", messages=[], context={}, similarity=0.71)
    edge = SimilarConversation(id="b", messages=[], context={}, similarity=0.7)

    assert best_usable_match([high, edge]) is high
    assert best_usable_match([edge]) is None
    assert best_usable_match([]) is None


def test_history_slice_takes_the_tail() -> None:
    conversation = SimilarConversation(
        id="a",
        messages=[{"role": "user", "content": f"message {index}"} for index in range(6)],
        context={},
        similarity=0.9,
    )

    assert [item["content"] for item in history_slice(conversation, 4)] == [
        "message 2",
        "message 3",
        "message 4",
        "message 5",
    ]
    assert history_slice(conversation, 0) == []


def test_history_slice_skips_system_messages() -> None:
    conversation = SimilarConversation(
        id="a",
        messages=[{"role": "system", "content": "rules"}, *TAX_MESSAGES],
        context={},
        similarity=0.9,
    )

    assert [item["role"] for item in history_slice(conversation, 4)] == ["user", "assistant"]
