from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx

from agentflow.logging import get_logger
from agentflow.service.errors import ToolExecutionError

logger = get_logger(__name__)

TOOL_NAME = "job_search"
DETAIL_URL = "https://www.arbeitsagentur.de/jobsuche/jobdetail/{reference}"
DEFAULT_RADIUS = 25


class JobSearchTool:
    """Client for the public job board search endpoint.

    Returns the canonical search payload ``{job_count, jobs}`` where every job
    carries ``title``, ``company``, ``location``, ``url`` and ``reference``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        page_size: int = 5,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={
                    "X-API-Key": self.api_key,
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _query(self, parameters: Mapping[str, Any]) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "page": int(parameters.get("page") or 1),
            "size": int(parameters.get("size") or self.page_size),
        }
        what = str(parameters.get("what") or "").strip()
        where = str(parameters.get("where") or "").strip()
        if what:
            query["was"] = what
        if where:
            query["wo"] = where
        radius = parameters.get("radius")
        query["umkreis"] = int(radius) if radius not in (None, "") else DEFAULT_RADIUS
        return query

    @staticmethod
    def _map_job(offer: Mapping[str, Any]) -> Dict[str, Any]:
        reference = str(offer.get("refnr") or "")
        place = offer.get("arbeitsort") or {}
        url = offer.get("externeUrl") or (DETAIL_URL.format(reference=reference) if reference else "")
        return {
            "title": offer.get("titel") or offer.get("beruf") or "",
            "company": offer.get("arbeitgeber") or "",
            "location": place.get("ort", "") if isinstance(place, Mapping) else "",
            "url": url,
            "reference": reference,
        }

    async def search(self, parameters: Mapping[str, Any]) -> Dict[str, Any]:
        query = self._query(parameters)
        logger.info("job_search_started", query=query)
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/pc/v4/jobs", params=query)
            response.raise_for_status()
            content = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "job_search_http_error",
                status_code=e.response.status_code,
                query=query,
            )
            raise ToolExecutionError(TOOL_NAME, f"HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error("job_search_timeout", query=query, error=str(e))
            raise ToolExecutionError(TOOL_NAME, "request timed out") from e
        except httpx.HTTPError as e:
            logger.error("job_search_transport_error", query=query, error=str(e))
            raise ToolExecutionError(TOOL_NAME, e) from e
        except ValueError as e:
            logger.error("job_search_invalid_json", query=query, error=str(e))
            raise ToolExecutionError(TOOL_NAME, "invalid JSON response") from e

        if not isinstance(content, dict):
            content = {}
        offers = content.get("stellenangebote") or []
        jobs: List[Dict[str, Any]] = [self._map_job(o) for o in offers if isinstance(o, Mapping)]
        logger.info("job_search_completed", job_count=len(jobs), total=content.get("maxErgebnisse"))
        return {"job_count": len(jobs), "jobs": jobs}

    async def __call__(self, parameters: Mapping[str, Any], acting_user: Any = None) -> Dict[str, Any]:
        return await self.search(parameters)


__all__ = ["JobSearchTool", "TOOL_NAME"]
