"""Durable per-user tax preferences, facts, and profile data.

Layout in the document store:
- `userPreferences/<user_id>`: {"tax": {"state": ..., "filing_status": ...}, "updated_at": ...}
- `userProfiles/<user_id>`: {"facts": {<category>: {<key>: value}}, ...profile fields, "updated_at": ...}

Writes are independent and last-write-wins. A failed write is logged and
reported as `False`; reads raise `DocumentStoreError` so callers choose how to degrade.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from app.services.document_store import DocumentStoreError

logger = logging.getLogger(__name__)

PREFERENCES_COLLECTION = "userPreferences"
PROFILES_COLLECTION = "userProfiles"

TAX_FACT_CATEGORY = "tax"
FILING_STATE_FACT_KEY = "filingState"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PreferenceStore:
    """Preference and fact storage for one document store."""

    def __init__(self, store: Any) -> None:
        self.store = store

    async def save_preferences(self, user_id: UUID | str, partial: dict[str, Any]) -> bool:
        """Merge `partial` into the user's tax preferences; absent fields are untouched."""
        fields = {key: value for key, value in partial.items() if value is not None}
        if not fields:
            return False

        try:
            await self.store.set(
                PREFERENCES_COLLECTION,
                str(user_id),
                {"tax": fields, "updated_at": _now_iso()},
                merge=True,
            )
        except DocumentStoreError:
            logger.exception("Failed to save tax preferences for user %s", user_id)
            return False
        return True

    async def get_preferences(self, user_id: UUID | str) -> dict[str, Any] | None:
        document = await self.store.get(PREFERENCES_COLLECTION, str(user_id))
        if not document or not document.get("tax"):
            return None
        return dict(document["tax"])

    async def store_fact(
        self,
        user_id: UUID | str,
        category: str,
        key: str,
        value: Any,
    ) -> bool:
        if not category or not key:
            raise ValueError("category and key are required")

        try:
            await self.store.set(
                PROFILES_COLLECTION,
                str(user_id),
                {"facts": {category: {key: value}}, "updated_at": _now_iso()},
                merge=True,
            )
        except DocumentStoreError:
            logger.exception("Failed to store fact %s.%s for user %s", category, key, user_id)
            return False
        return True

    async def get_fact(self, user_id: UUID | str, category: str, key: str) -> Any | None:
        profile = await self.get_profile(user_id)
        if not profile:
            return None

        facts = profile.get("facts") or {}
        return (facts.get(category) or {}).get(key)

    async def save_profile(self, user_id: UUID | str, data: dict[str, Any]) -> bool:
        """Merge arbitrary profile fields; `facts` is reserved for `store_fact`."""
        payload = {key: value for key, value in data.items() if key != "facts"}
        payload["updated_at"] = _now_iso()

        try:
            await self.store.set(PROFILES_COLLECTION, str(user_id), payload, merge=True)
        except DocumentStoreError:
            logger.exception("Failed to save profile for user %s", user_id)
            return False
        return True

    async def get_profile(self, user_id: UUID | str) -> dict[str, Any] | None:
        return await self.store.get(PROFILES_COLLECTION, str(user_id))
