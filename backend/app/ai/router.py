"""FastAPI router for the context-aware finance chat."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from app.ai.dialogue import DialogueContextManager
from app.ai.gemini_client import GeminiClient
from app.ai.handlers import GeneralHandler, IncomeHandler, TaxHandler
from app.ai.memory import SemanticMemoryStore
from app.ai.session_context import SessionContext
from app.auth import get_current_user_id
from app.config import settings
from app.database import get_document_store
from app.services.preference_store import PreferenceStore
from app.services.tax_calculator import CompletionTaxCalculator

router = APIRouter(prefix="/ai", tags=["ai"])


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=4000)


class AIChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    context: SessionContext | None = None
    history: list[ChatMessage] = Field(default_factory=list, max_length=50)


class AIChatResponse(BaseModel):
    reply: str
    context: SessionContext
    awaiting_slot: str | None = None
    workspace: dict[str, Any] | None = None
    context_sources: dict[str, str] = Field(default_factory=dict)
    defaulted_fields: list[str] = Field(default_factory=list)
    used_saved_context: bool = False
    memory_matches: int = 0


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value.quantize(Decimal("0.01")))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_to_jsonable(item) for item in value]
    return value


def _get_gemini_client() -> GeminiClient:
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        embedding_model=settings.gemini_embedding_model,
        timeout_seconds=settings.gemini_timeout_seconds,
    )


def build_dialogue_manager(store: Any, client: Any) -> DialogueContextManager:
    """Wire the manager from one document store and one Gemini client."""
    return DialogueContextManager(
        completion=client,
        memory=SemanticMemoryStore(store, client),
        preferences=PreferenceStore(store),
        handlers={
            "tax": TaxHandler(
                client,
                CompletionTaxCalculator(client),
                require_filing_status=settings.require_filing_status,
            ),
            "income": IncomeHandler(client),
            "general": GeneralHandler(client),
        },
        similarity_threshold=settings.memory_similarity_threshold,
        top_k=settings.memory_top_k,
        history_slice_size=settings.memory_history_slice,
        history_limit=settings.chat_history_limit,
        default_filing_status=None if settings.require_filing_status else "Single",
    )


@router.post("/chat", response_model=AIChatResponse)
async def ai_chat(
    payload: AIChatRequest,
    background_tasks: BackgroundTasks,
    user_id: UUID = Depends(get_current_user_id),
    store: Any = Depends(get_document_store),
) -> AIChatResponse:
    """
    One conversational turn. The client sends back the `context` it received.

    Example request:
    {
      "message": "How much should I pay in quarterly taxes?",
      "context": null,
      "history": []
    }

    Example response:
    {
      "reply": "Which state do you file taxes in? ...",
      "context": {"active_state": null, ..., "slot": {"status": "awaiting", ...}},
      "awaiting_slot": "state",
      ...
    }
    """
    message_text = payload.message.strip()
    if not message_text:
        raise HTTPException(status_code=422, detail="message must not be empty")

    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=503,
            detail="AI assistant is unavailable because GEMINI_API_KEY is not configured.",
        )

    manager = build_dialogue_manager(store, _get_gemini_client())
    result = await manager.handle_turn(
        user_id,
        message_text,
        context=payload.context,
        history=[message.model_dump() for message in payload.history],
    )

    # Runs after the response is sent; failures are logged by the stores.
    background_tasks.add_task(manager.persist_turn, result.persistence)

    return AIChatResponse(
        reply=result.reply,
        context=result.context,
        awaiting_slot=result.awaiting_slot,
        workspace=_to_jsonable(result.workspace) if result.workspace else None,
        context_sources=result.context_sources,
        defaulted_fields=result.defaulted_fields,
        used_saved_context=result.used_saved_context,
        memory_matches=result.memory_matches,
    )
