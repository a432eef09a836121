"""Tests for application middleware (body size limit, request logging)."""

import logging
import uuid

import pytest
from httpx import AsyncClient

from tests.conftest import actor_headers


@pytest.mark.asyncio
async def test_body_size_limit_exceeded(client: AsyncClient) -> None:
    """POST with a Content-Length over the limit is rejected with 413."""
    resp = await client.post(
        "/jobs",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_body_size_limit_within_range(client: AsyncClient) -> None:
    """Small bodies pass through to the route (and fail there for other reasons)."""
    resp = await client.post("/jobs", json={"title": "x"})
    assert resp.status_code != 413


@pytest.mark.asyncio
async def test_body_size_limit_get_not_checked(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_request_logged_with_actor(
    client: AsyncClient, caplog: pytest.LogCaptureFixture
) -> None:
    actor_id = uuid.uuid4()
    with caplog.at_level(logging.INFO, logger="app.requests"):
        await client.post("/internal/sweep", headers=actor_headers(actor_id, "system"))

    lines = [r.getMessage() for r in caplog.records if r.name == "app.requests"]
    assert any(
        line.startswith("POST /internal/sweep 200") and f"actor={actor_id}" in line
        for line in lines
    )
