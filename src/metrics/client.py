"""HTTP client for the analytics read endpoints.

Both endpoints answer with an envelope ``{success, data, message}``;
``success: false`` is treated like any other transport failure.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from config.loader import get_analytics_paths, get_api_base_url, get_api_timeout
from models.metrics import MetricsSummary, ProcessPage
from utils.error_handler import TransportFailure, handle_transport_error

logger = structlog.get_logger(__name__)


class AnalyticsClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        summary_path: Optional[str] = None,
        processes_path: Optional[str] = None,
    ) -> None:
        default_summary, default_processes = get_analytics_paths()
        self._client = client
        self._summary_path = summary_path or default_summary
        self._processes_path = processes_path or default_processes

    @classmethod
    def create(cls, base_url: Optional[str] = None, timeout: Optional[float] = None) -> "AnalyticsClient":
        client = httpx.AsyncClient(
            base_url=(base_url or get_api_base_url()).rstrip("/"),
            timeout=timeout if timeout is not None else get_api_timeout(),
            headers={"Content-Type": "application/json"},
        )
        return cls(client)

    async def _get_data(self, path: str, params: dict[str, str]) -> Any:
        try:
            resp = await self._client.get(path, params=params)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise handle_transport_error(e) from e

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise TransportFailure(details=message or f"Request to {path} was not successful", is_retryable=False)

        logger.debug("analytics_fetched", path=path, params=params)
        return body.get("data")

    async def get_summary(self, user_id: str) -> MetricsSummary:
        data = await self._get_data(self._summary_path, {"user_id": user_id})
        try:
            return MetricsSummary.model_validate(data or {})
        except ValidationError as e:
            raise TransportFailure(details=f"Malformed summary: {e}"[:200], is_retryable=False) from e

    async def get_user_processes(
        self,
        user_id: str,
        limit: int = 50,
        last_evaluated_key: Optional[str] = None,
    ) -> ProcessPage:
        params = {"user_id": user_id, "limit": str(limit)}
        if last_evaluated_key:
            params["last_evaluated_key"] = last_evaluated_key
        data = await self._get_data(self._processes_path, params)
        try:
            return ProcessPage.model_validate(data or {})
        except ValidationError as e:
            raise TransportFailure(details=f"Malformed process page: {e}"[:200], is_retryable=False) from e

    async def aclose(self) -> None:
        await self._client.aclose()
