import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from app.core.schemas import PlannerResponse

logger = logging.getLogger(__name__)

TABLE_CHART_CONFIG: Dict[str, Any] = {"chartType": "table", "encoding": {}}

# Rows sent to the chart inference endpoint
CHART_SAMPLE_SIZE = 10


class Planner(Protocol):
    async def plan(self, prompt: str) -> PlannerResponse: ...

    async def infer_chart_config(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]: ...


class HttpPlanner:
    """
    Client for the natural-language planning service.

    Endpoints:
        POST {base_url}/plan   {"prompt": ...} -> {plan, title, fidelity, abstain}
        POST {base_url}/chart  {"rows": [...], "total_rows": n, "columns": [...]} -> chart config
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

    async def plan(self, prompt: str) -> PlannerResponse:
        logger.info(f"Requesting query plan, prompt length: {len(prompt)}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/plan", json={"prompt": prompt})
            response.raise_for_status()
            data = response.json()

        planned = PlannerResponse.model_validate(data)
        if not planned.title:
            planned.title = prompt
        return planned

    async def infer_chart_config(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Pick a chart configuration for a result set.

        Never raises: empty results and any failure fall back to a table.
        """
        if not rows:
            return dict(TABLE_CHART_CONFIG)

        columns = list(rows[0].keys())
        if not columns:
            return dict(TABLE_CHART_CONFIG)

        sample = rows[:CHART_SAMPLE_SIZE]
        logger.info(
            f"Generating chart config with sample size: {len(sample)}, total rows: {len(rows)}"
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chart",
                    json={"rows": sample, "total_rows": len(rows), "columns": columns},
                )
                response.raise_for_status()
                config = response.json()
        except (httpx.HTTPError, ValueError) as error:
            logger.error(f"Failed to generate chart config, falling back to table: {error}")
            return dict(TABLE_CHART_CONFIG)

        if not isinstance(config, dict) or "chartType" not in config:
            return dict(TABLE_CHART_CONFIG)
        return config
