import logging
from typing import Any, Dict, Optional

import pydantic

from app.core.cache.store import RedisStore
from app.core.schemas import PromptCacheEntry, SqlCacheEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24

PROMPT_PREFIX = "question:prompt"
SQL_PREFIX = "question:sql"


class DedupCache:
    """
    Fingerprint-keyed caches.

    - prompt fingerprint -> {job_id, question_id}: reuse a running/finished job
    - sql fingerprint -> {question_id, result, chart_config, job_id}: skip the executor
    """

    def __init__(self, store: RedisStore, ttl: int = DEFAULT_TTL_SECONDS):
        self.store = store
        self.ttl = ttl

    @staticmethod
    def key(prefix: str, fingerprint: str) -> str:
        return f"{prefix}:{fingerprint}"

    # =========================
    # Prompt fingerprint
    # =========================
    async def get_by_prompt(self, fingerprint: str) -> Optional[PromptCacheEntry]:
        data = await self.store.get(self.key(PROMPT_PREFIX, fingerprint))
        return self._parse(PromptCacheEntry, data, fingerprint)

    async def set_by_prompt(
        self, fingerprint: str, job_id: str, question_id: str, ttl: Optional[int] = None
    ) -> None:
        entry = PromptCacheEntry(job_id=job_id, question_id=question_id)
        await self.store.set(
            self.key(PROMPT_PREFIX, fingerprint), entry.model_dump(), ttl or self.ttl
        )

    # =========================
    # SQL fingerprint
    # =========================
    async def get_by_sql(self, fingerprint: str) -> Optional[SqlCacheEntry]:
        data = await self.store.get(self.key(SQL_PREFIX, fingerprint))
        return self._parse(SqlCacheEntry, data, fingerprint)

    async def set_by_sql(
        self,
        fingerprint: str,
        question_id: str,
        result: Dict[str, Any],
        chart_config: Dict[str, Any],
        job_id: str,
        ttl: Optional[int] = None,
    ) -> None:
        entry = SqlCacheEntry(
            question_id=question_id,
            result=result,
            chart_config=chart_config,
            job_id=job_id,
        )
        await self.store.set(self.key(SQL_PREFIX, fingerprint), entry.model_dump(), ttl or self.ttl)

    def _parse(self, model, data: Any, fingerprint: str):
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as error:
            logger.warning(f"Ignoring malformed {model.__name__} for {fingerprint}: {error}")
            return None
