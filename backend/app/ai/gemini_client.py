"""Minimal Gemini API wrapper: forced function-call completions and text embeddings.

Each call is a single attempt. Callers own any fallback; this client never retries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
STRUCTURED_FUNCTION_NAME = "respond"


class GeminiError(Exception):
    """Base exception for Gemini client errors."""


class GeminiRequestError(GeminiError):
    """Raised when Gemini API request fails."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class GeminiResponseError(GeminiError):
    """Raised when Gemini response shape cannot be parsed."""


@dataclass
class GeminiToolCall:
    """One function/tool call emitted by the model."""

    name: str
    arguments: dict[str, Any]


@dataclass
class GeminiResult:
    """Parsed model response payload."""

    text_response: str
    tool_calls: list[GeminiToolCall]


class GeminiClient:
    """Thin client for Gemini `generateContent` and `embedContent`."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        embedding_model: str,
        timeout_seconds: int = 25,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
        self.timeout_seconds = timeout_seconds

    async def complete(
        self,
        system_prompt: str,
        prior_messages: list[dict[str, Any]],
        user_message: str,
        response_schema: dict[str, Any],
    ) -> dict[str, Any]:
        """Return typed fields matching `response_schema` via one forced function call."""
        body = {
            "system_instruction": {
                "parts": [{"text": system_prompt}],
            },
            "contents": self._build_contents(
                [*prior_messages, {"role": "user", "content": user_message}]
            ),
            "tools": [
                {
                    "functionDeclarations": [
                        {
                            "name": STRUCTURED_FUNCTION_NAME,
                            "description": "Return the answer using these fields.",
                            "parameters": response_schema,
                        }
                    ]
                }
            ],
            "toolConfig": {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [STRUCTURED_FUNCTION_NAME],
                }
            },
            "generationConfig": {
                "temperature": 0.1,
            },
        }

        payload = await self._post(f"{GEMINI_BASE_URL}/{self.model}:generateContent", body)
        result = self._parse_response(payload)

        for call in result.tool_calls:
            if call.name == STRUCTURED_FUNCTION_NAME:
                return call.arguments

        raise GeminiResponseError("Gemini response missing structured function call")

    async def embed(self, text: str) -> list[float]:
        """Embed `text` into a fixed-length float vector."""
        body = {
            "model": f"models/{self.embedding_model}",
            "content": {"parts": [{"text": text}]},
        }
        payload = await self._post(
            f"{GEMINI_BASE_URL}/{self.embedding_model}:embedContent",
            body,
        )

        values = (payload.get("embedding") or {}).get("values")
        if not isinstance(values, list) or not values:
            raise GeminiResponseError("Gemini embedding response missing values")

        try:
            return [float(value) for value in values]
        except (TypeError, ValueError) as exc:
            raise GeminiResponseError("Gemini embedding values are not numeric") from exc

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        params = {"key": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, params=params, json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise GeminiRequestError(503, "Gemini request failed") from exc

        if response.status_code >= 400:
            raise GeminiRequestError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise GeminiResponseError("Invalid JSON from Gemini") from exc

    def _build_contents(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role") or "user")
            content = str(message.get("content") or "").strip()
            if not content:
                continue

            gemini_role = "model" if role == "assistant" else "user"
            contents.append({
                "role": gemini_role,
                "parts": [{"text": content}],
            })

        if not contents:
            contents.append(
                {
                    "role": "user",
                    "parts": [{"text": "Hello."}],
                }
            )

        return contents

    def _parse_response(self, payload: dict[str, Any]) -> GeminiResult:
        candidates = payload.get("candidates") or []
        if not candidates:
            raise GeminiResponseError("Gemini response missing candidates")

        candidate = candidates[0] or {}
        parts = ((candidate.get("content") or {}).get("parts")) or []

        text_parts: list[str] = []
        tool_calls: list[GeminiToolCall] = []

        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                text_parts.append(text.strip())

            raw_function_call = part.get("functionCall") or part.get("function_call")
            if not raw_function_call:
                continue

            name = str(raw_function_call.get("name") or "").strip()
            args_raw = raw_function_call.get("args", {})

            if isinstance(args_raw, str):
                try:
                    parsed_args = json.loads(args_raw)
                except ValueError:
                    parsed_args = {}
            elif isinstance(args_raw, dict):
                parsed_args = args_raw
            else:
                parsed_args = {}

            if name:
                tool_calls.append(
                    GeminiToolCall(
                        name=name,
                        arguments=parsed_args,
                    )
                )

        return GeminiResult(
            text_response="\n".join(text_parts).strip(),
            tool_calls=tool_calls,
        )
