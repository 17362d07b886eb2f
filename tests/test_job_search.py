"""Job board client tests against an in-process httpx transport."""

from __future__ import annotations

import httpx
import pytest

from agentflow.service.errors import ToolExecutionError
from agentflow.service.job_search import JobSearchTool

BASE_URL = "https://jobs.example/jobsuche-service"


def _tool(handler) -> JobSearchTool:
    return JobSearchTool(BASE_URL, "test-key", page_size=5, transport=httpx.MockTransport(handler))


async def test_search_maps_offers_to_canonical_jobs():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["api_key"] = request.headers.get("X-API-Key")
        return httpx.Response(
            200,
            json={
                "maxErgebnisse": 2,
                "stellenangebote": [
                    {
                        "titel": "Koch (m/w/d)",
                        "arbeitgeber": "Kantine GmbH",
                        "arbeitsort": {"ort": "Köln"},
                        "refnr": "10000-1",
                    },
                    {
                        "beruf": "Küchenhilfe",
                        "arbeitgeber": "Hotel AG",
                        "arbeitsort": {"ort": "Bonn"},
                        "refnr": "10000-2",
                        "externeUrl": "https://hotel.example/karriere",
                    },
                ],
            },
        )

    tool = _tool(handler)
    try:
        result = await tool({"what": "Koch", "where": "Köln", "radius": 10})
    finally:
        await tool.close()

    assert seen["path"] == "/jobsuche-service/pc/v4/jobs"
    assert seen["params"] == {"page": "1", "size": "5", "was": "Koch", "wo": "Köln", "umkreis": "10"}
    assert seen["api_key"] == "test-key"
    assert result["job_count"] == 2
    assert result["jobs"][0] == {
        "title": "Koch (m/w/d)",
        "company": "Kantine GmbH",
        "location": "Köln",
        "url": "https://www.arbeitsagentur.de/jobsuche/jobdetail/10000-1",
        "reference": "10000-1",
    }
    assert result["jobs"][1]["title"] == "Küchenhilfe"
    assert result["jobs"][1]["url"] == "https://hotel.example/karriere"


async def test_default_radius_and_empty_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"maxErgebnisse": 0})

    tool = _tool(handler)
    try:
        result = await tool.search({"what": "Astronaut"})
    finally:
        await tool.close()

    assert seen["params"]["umkreis"] == "25"
    assert "wo" not in seen["params"]
    assert result == {"job_count": 0, "jobs": []}


async def test_http_error_becomes_tool_error():
    tool = _tool(lambda request: httpx.Response(503, json={"message": "down"}))
    try:
        with pytest.raises(ToolExecutionError) as excinfo:
            await tool.search({"what": "Koch"})
    finally:
        await tool.close()
    assert excinfo.value.tool == "job_search"
    assert "HTTP 503" in excinfo.value.message


async def test_timeout_becomes_tool_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow upstream", request=request)

    tool = _tool(handler)
    try:
        with pytest.raises(ToolExecutionError) as excinfo:
            await tool.search({"what": "Koch"})
    finally:
        await tool.close()
    assert "timed out" in excinfo.value.message


async def test_non_object_payload_is_treated_as_empty():
    tool = _tool(lambda request: httpx.Response(200, json=["unexpected"]))
    try:
        assert await tool.search({"what": "Koch"}) == {"job_count": 0, "jobs": []}
    finally:
        await tool.close()
