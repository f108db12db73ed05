"""SQLite-backed ProfileStore and ContentRepository."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Dict, List, Optional
from uuid import uuid4

import db
from engines.base import ContentRepository, PersistenceError, ProfileStore
from engines.config import WeightAdjustmentConfig
from engines.dedup import fingerprint
from engines.interactions import InteractionRecord
from engines.profile import Profile
from schemas import CandidateItem

logger = logging.getLogger(__name__)


async def _run_db(func, *args):
    try:
        return await asyncio.to_thread(func, *args)
    except sqlite3.Error as exc:
        raise PersistenceError(f"{func.__name__} failed: {exc}") from exc


class SqliteProfileStore(ProfileStore):
    def __init__(self, weights: WeightAdjustmentConfig | None = None):
        self.weights = weights

    async def load(self, user_id: str) -> Optional[Profile]:
        data = await _run_db(db.get_profile, user_id)
        if data is None:
            return None
        return Profile.from_dict(data, self.weights)

    async def save(self, user_id: str, profile: Profile) -> None:
        await _run_db(db.upsert_profile, user_id, profile.to_dict())

    async def record_change(self, record: InteractionRecord) -> None:
        await _run_db(db.log_weight_change, record.to_dict())


def new_question_id() -> str:
    return f"gen_{uuid4().hex[:8]}"


class SqliteContentRepository(ContentRepository):
    async def exists_fingerprint(self, fingerprint: str) -> bool:
        return await _run_db(db.fingerprint_exists, fingerprint)

    async def insert(self, item: CandidateItem) -> str:
        question_id = new_question_id()
        payload = item.model_dump(by_alias=True, exclude={"duplicate"})
        await _run_db(db.insert_question, question_id, fingerprint(item.text, item.tags), payload)
        logger.debug("Stored question %s in %s", question_id, item.topic)
        return question_id

    async def list_questions(self, category: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
        return await _run_db(db.list_questions, category, limit)
