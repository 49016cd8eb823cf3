import logging
from typing import Optional, Protocol

import httpx

from app.core.errors import ExecutorError
from app.core.schemas import ExecutionResult

logger = logging.getLogger(__name__)


class Executor(Protocol):
    async def execute(self, sql: str) -> ExecutionResult: ...


class HttpExecutor:
    """
    Client for the warehouse executor.

    The executor runs its own dry-run size check and may refuse a query
    before running it; that refusal arrives as an HTTP error.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def execute(self, sql: str) -> ExecutionResult:
        if not sql or not isinstance(sql, str):
            raise ExecutorError("Query must be a non-empty string")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/query", json={"sql": sql})
                response.raise_for_status()
                result = ExecutionResult.model_validate(response.json())
        except httpx.HTTPStatusError as error:
            raise ExecutorError(
                f"Query failed with status {error.response.status_code}: {error.response.text}"
            ) from error
        except (httpx.HTTPError, ValueError) as error:
            # ValueError covers undecodable bodies and pydantic shape errors
            raise ExecutorError(f"Query failed: {error}") from error

        logger.info(f"Executor returned {len(result.rows)} rows")
        return result
