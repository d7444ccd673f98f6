"""Endpoints for saved preferences, user facts, conversation memory, and entity parsing."""

from __future__ import annotations

import logging
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.ai.gemini_client import GeminiError, GeminiRequestError
from app.ai.memory import SemanticMemoryStore
from app.ai.prompt import SLOT_PARSER_PROMPTS, SLOT_VALUE_SCHEMAS
from app.ai.router import ChatMessage, _get_gemini_client
from app.auth import get_current_user_id
from app.config import settings
from app.database import get_document_store
from app.services.document_store import DocumentStoreError
from app.services.entity_extractor import (
    FilingStatus,
    extract,
    normalize_filing_status,
    normalize_state,
)
from app.services.preference_store import PreferenceStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai-memory"])


class PreferencesUpdate(BaseModel):
    state: str | None = Field(default=None, max_length=64)
    filing_status: FilingStatus | None = None


class FactUpdate(BaseModel):
    value: Any


class ConversationCreate(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1, max_length=50)
    context: dict[str, Any] = Field(default_factory=dict)


class SimilarConversationOut(BaseModel):
    id: str
    messages: list[dict[str, str]]
    context: dict[str, Any]
    similarity: float
    timestamp: str | None = None


class ParseEntityRequest(BaseModel):
    text: str = Field(min_length=1, max_length=500)
    entity_type: Literal["state", "filingStatus", "quarter"]


class ParseEntityResponse(BaseModel):
    value: str | None = None
    source: Literal["extractor", "provider"] | None = None


def _store_unavailable() -> HTTPException:
    logger.exception("Memory store request failed")
    return HTTPException(status_code=503, detail="Saved data is unavailable right now. Try again shortly.")


def _require_gemini_key() -> None:
    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=503,
            detail="AI assistant is unavailable because GEMINI_API_KEY is not configured.",
        )


@router.get("/memory/preferences")
async def get_preferences(
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    try:
        preferences = await PreferenceStore(store).get_preferences(user_id)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    return {"preferences": preferences}


@router.put("/memory/preferences")
async def update_preferences(
    payload: PreferencesUpdate,
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    """Merge the supplied fields into saved tax preferences."""
    partial: dict[str, Any] = {"filing_status": payload.filing_status}
    if payload.state is not None:
        state = normalize_state(payload.state)
        if state is None:
            raise HTTPException(status_code=422, detail="state must be a US state or District of Columbia")
        partial["state"] = state

    if all(value is None for value in partial.values()):
        raise HTTPException(status_code=422, detail="Provide state and/or filing_status")

    preferences = PreferenceStore(store)
    if not await preferences.save_preferences(user_id, partial):
        raise HTTPException(status_code=503, detail="Preferences could not be saved. Try again shortly.")

    try:
        saved = await preferences.get_preferences(user_id)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    return {"preferences": saved}


@router.get("/memory/facts/{category}/{key}")
async def get_fact(
    category: str,
    key: str,
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    try:
        value = await PreferenceStore(store).get_fact(user_id, category, key)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    return {"category": category, "key": key, "value": value}


@router.put("/memory/facts/{category}/{key}")
async def put_fact(
    category: str,
    key: str,
    payload: FactUpdate,
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    if category == "tax" and key == "filingState":
        state = normalize_state(str(payload.value or ""))
        if state is None:
            raise HTTPException(status_code=422, detail="value must be a US state or District of Columbia")
        payload.value = state

    if not await PreferenceStore(store).store_fact(user_id, category, key, payload.value):
        raise HTTPException(status_code=503, detail="Fact could not be saved. Try again shortly.")
    return {"category": category, "key": key, "value": payload.value}


@router.get("/memory/profile")
async def get_profile(
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    try:
        profile = await PreferenceStore(store).get_profile(user_id)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    return {"profile": profile}


@router.put("/memory/profile")
async def update_profile(
    payload: dict[str, Any],
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    """Merge arbitrary profile fields. Facts are written through the facts endpoint."""
    preferences = PreferenceStore(store)
    if not await preferences.save_profile(user_id, payload):
        raise HTTPException(status_code=503, detail="Profile could not be saved. Try again shortly.")

    try:
        profile = await preferences.get_profile(user_id)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    return {"profile": profile}


@router.post("/memory/conversations", status_code=201)
async def store_conversation(
    payload: ConversationCreate,
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> dict[str, Any]:
    _require_gemini_key()

    memory = SemanticMemoryStore(store, _get_gemini_client())
    conversation_id = await memory.store_conversation(
        user_id,
        [message.model_dump() for message in payload.messages],
        payload.context,
    )
    return {"id": conversation_id, "stored": conversation_id is not None}


@router.get("/memory/similar", response_model=list[SimilarConversationOut])
async def similar_conversations(
    query: str = Query(min_length=1, max_length=2000),
    limit: int = Query(default=3, ge=1, le=10),
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> list[SimilarConversationOut]:
    """Ranked past conversations; includes matches below the usable threshold."""
    _require_gemini_key()

    memory = SemanticMemoryStore(store, _get_gemini_client())
    try:
        matches = await memory.find_similar(user_id, query, k=limit)
    except DocumentStoreError as exc:
        raise _store_unavailable() from exc
    except GeminiRequestError as exc:
        if exc.status_code == 429:
            raise HTTPException(status_code=503, detail="AI assistant is rate-limited right now. Try again shortly.") from exc
        raise HTTPException(status_code=502, detail="AI assistant request failed. Please try again.") from exc
    except GeminiError as exc:
        raise HTTPException(status_code=502, detail="AI assistant response could not be processed.") from exc

    return [
        SimilarConversationOut(
            id=match.id,
            messages=match.messages,
            context=match.context,
            similarity=round(match.similarity, 6),
            timestamp=match.timestamp,
        )
        for match in matches
    ]


@router.post("/parse-entity", response_model=ParseEntityResponse)
async def parse_entity(
    payload: ParseEntityRequest,
    user_id: UUID = Depends(get_current_user_id),
) -> ParseEntityResponse:
    """
    Resolve one entity from free text: extractor first, then one provider call.

    Quarters are extractor-only. Provider failures resolve to `value: null`.
    """
    extracted = extract(payload.text)
    local_values = {
        "state": extracted.states,
        "filingStatus": extracted.filing_statuses,
        "quarter": extracted.quarters,
    }[payload.entity_type]
    if local_values:
        return ParseEntityResponse(value=local_values[0], source="extractor")

    if payload.entity_type == "quarter" or not settings.gemini_api_key:
        return ParseEntityResponse()

    try:
        result = await _get_gemini_client().complete(
            SLOT_PARSER_PROMPTS[payload.entity_type],
            [],
            payload.text,
            SLOT_VALUE_SCHEMAS[payload.entity_type],
        )
    except GeminiError:
        logger.warning("Entity parse fallback failed for user %s", user_id, exc_info=True)
        return ParseEntityResponse()

    raw_value = str(result.get("value") or "")
    if payload.entity_type == "state":
        value = normalize_state(raw_value)
    else:
        value = normalize_filing_status(raw_value)
    return ParseEntityResponse(value=value, source="provider" if value else None)
