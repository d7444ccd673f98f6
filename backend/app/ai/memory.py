"""Semantic conversation memory for `/ai/chat`.

Each finished turn batch is stored once with an embedding of its transcript.
Retrieval embeds the query and ranks the user's stored conversations by cosine
similarity with a linear scan; an ANN index can replace the scan behind
`find_similar` without changing callers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from app.ai.gemini_client import GeminiError
from app.services.document_store import DocumentStoreError

logger = logging.getLogger(__name__)

CONVERSATIONS_COLLECTION = "conversationMemory"
DEFAULT_SIMILARITY_THRESHOLD = 0.7
_PROMPT_ROLES = {"user", "assistant"}


@dataclass
class SimilarConversation:
    """One ranked past conversation."""

    id: str
    messages: list[dict[str, str]]
    context: dict[str, Any]
    similarity: float
    timestamp: str | None = None


def _clip_text(value: str, max_len: int = 280) -> str:
    normalized = " ".join(value.strip().split())
    if len(normalized) <= max_len:
        return normalized
    return f"{normalized[: max_len - 1]}…"


def join_transcript(messages: list[dict[str, Any]]) -> str:
    """Render messages as `<role>: <content>` lines."""
    return "\n".join(f"{message['role']}: {message['content']}" for message in messages)


def cosine_similarity(vec_a: list[float], vec_b: list[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 for empty, zero-norm, or mismatched vectors."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot / (norm_a * norm_b)


def history_slice(conversation: SimilarConversation, limit: int) -> list[dict[str, str]]:
    """Last `limit` user/assistant messages of a recalled conversation, clipped for prompt size."""
    if limit < 1:
        return []
    turns = [message for message in conversation.messages if message.get("role") in _PROMPT_ROLES]
    return [
        {"role": message["role"], "content": _clip_text(message["content"])}
        for message in turns[-limit:]
    ]


def _clean_messages(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Drop blank messages; roles and content are kept as given."""
    cleaned: list[dict[str, str]] = []
    for message in messages:
        role = str(message.get("role") or "")
        content = str(message.get("content") or "")
        if role and content.strip():
            cleaned.append({"role": role, "content": content})
    return cleaned


class SemanticMemoryStore:
    """Stores conversations with embeddings and ranks them against new queries."""

    def __init__(self, store: Any, embedder: Any) -> None:
        self.store = store
        self.embedder = embedder

    async def store_conversation(
        self,
        user_id: UUID | str,
        messages: list[dict[str, Any]],
        context: dict[str, Any] | None = None,
    ) -> str | None:
        """Persist one conversation record; returns None when nothing was stored."""
        cleaned = _clean_messages(messages)
        if not cleaned:
            return None

        try:
            embedding = await self.embedder.embed(join_transcript(cleaned))
        except GeminiError:
            logger.warning("Skipping conversation memory for user %s: embedding failed", user_id, exc_info=True)
            return None

        if not embedding:
            return None

        record = {
            "user_id": str(user_id),
            "messages": cleaned,
            "context": dict(context or {}),
            "embedding": embedding,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            return await self.store.add(CONVERSATIONS_COLLECTION, record)
        except DocumentStoreError:
            logger.exception("Failed to store conversation memory for user %s", user_id)
            return None

    async def find_similar(
        self,
        user_id: UUID | str,
        query_text: str,
        k: int = 3,
    ) -> list[SimilarConversation]:
        """Top-`k` stored conversations for this user, highest similarity first."""
        if k < 1 or not query_text.strip():
            return []

        rows = await self.store.query(
            CONVERSATIONS_COLLECTION,
            [("user_id", "==", str(user_id))],
        )
        if not rows:
            return []

        query_embedding = await self.embedder.embed(query_text)

        ranked = [
            SimilarConversation(
                id=str(row.get("id")),
                messages=list(row.get("messages") or []),
                context=dict(row.get("context") or {}),
                similarity=cosine_similarity(query_embedding, row.get("embedding") or []),
                timestamp=row.get("timestamp"),
            )
            for row in rows
            if row.get("embedding")
        ]
        ranked.sort(key=lambda item: item.similarity, reverse=True)
        return ranked[:k]


def best_usable_match(
    matches: list[SimilarConversation],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> SimilarConversation | None:
    """Highest-ranked match strictly above `threshold`, if any."""
    if not matches:
        return None
    best = matches[0]
    return best if best.similarity > threshold else None
