import asyncio
import logging
from typing import Optional

from app.core.errors import AppError
from app.core.questions.repository import QuestionRepository

logger = logging.getLogger(__name__)


class SuggestedQuestionPromoter:
    """
    Background task promoting popular user questions to suggested ones.

    Example:
        promoter = SuggestedQuestionPromoter(repository, interval_seconds=300)
        promoter.start()
        ...
        await promoter.stop()
    """

    def __init__(
        self,
        repository: QuestionRepository,
        interval_seconds: float = 300,
        threshold: int = 5,
        window_hours: int = 24,
    ):
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.threshold = threshold
        self.window_hours = window_hours
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        promoted = await self.repository.promote_popular_questions(
            threshold=self.threshold, window_hours=self.window_hours
        )
        if promoted > 0:
            logger.info(f"Promoted {promoted} questions to suggested")
        return promoted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except AppError as error:
                # Next tick retries
                logger.error(f"Error promoting questions: {error}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="suggested-question-promoter")
            logger.info(
                f"Started suggested question promoter: every {self.interval_seconds}s, "
                f"threshold={self.threshold}, window_hours={self.window_hours}"
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
