"""API tests for evidence submission and analysis tracking."""

import asyncio

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

pytestmark = [pytest.mark.api, pytest.mark.asyncio]

BASE = "/api/v1/analyses"


class BlockingSummarizer:
    def __init__(self):
        self.started = asyncio.Event()

    async def summarize(self, content, options=None):
        self.started.set()
        await asyncio.sleep(60)


async def upload(client: AsyncClient, filename: str, content: bytes, **data):
    return await client.post(BASE, files={"file": (filename, content, "application/octet-stream")}, data=data)


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["app"] == "Evidentia-Test"
        assert data["running_analyses"] == 0


class TestSubmit:
    """Tests for POST /analyses."""

    async def test_accepted(self, client: AsyncClient, app: FastAPI, sample_ioc_text):
        response = await upload(client, "incident.log", sample_ioc_text.encode())

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "validated"
        assert data["mode"] == "direct"
        assert len(data["sha256"]) == 64
        assert data["error_message"] is None

        await app.state.pipeline.wait(data["id"])

    async def test_rejected(self, client: AsyncClient):
        response = await upload(client, "tool.exe", b"MZ\x90\x00")

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "rejected"
        assert data["error_message"] == "File type .exe is blocked"

    async def test_quarantined(self, client: AsyncClient):
        response = await upload(client, "invoice.pdf", b"MZ pretending to be a pdf")

        assert response.status_code == 202
        analysis_id = response.json()["id"]
        assert response.json()["status"] == "quarantined"

        detail = (await client.get(f"{BASE}/{analysis_id}")).json()
        assert detail["quarantine"]["original_filename"] == "invoice.pdf"
        assert detail["quarantine"]["analysis_id"] == analysis_id

    async def test_missing_file(self, client: AsyncClient):
        response = await client.post(BASE, data={"preferred_parser_id": "x"})

        assert response.status_code == 422

    async def test_preferred_parser(self, client: AsyncClient, app: FastAPI):
        parsers = (await client.get("/api/v1/parsers")).json()["parsers"]
        text_id = next(p["id"] for p in parsers if p["name"] == "text")

        response = await upload(
            client, "auth.log", b"Oct 11 22:14:15 host sshd[1]: Accepted\n", preferred_parser_id=text_id
        )
        record = await app.state.pipeline.wait(response.json()["id"])

        assert record.preferred_parser_id == text_id
        assert record.parser_name == "text"


class TestQueries:
    """Tests for GET /analyses and GET /analyses/{id}."""

    async def test_completed_analysis(self, client: AsyncClient, app: FastAPI, sample_ioc_text):
        analysis_id = (await upload(client, "incident.log", sample_ioc_text.encode())).json()["id"]
        await app.state.pipeline.wait(analysis_id)

        response = await client.get(f"{BASE}/{analysis_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["parser_name"] == "text"
        assert data["events_count"] == 3
        assert data["indicators"][-1]["value"] == "CVE-2024-3400"
        assert data["techniques"][0]["technique_id"] == "T1105"
        assert data["techniques"][0]["tactic_name"] == "Command and Control"
        assert data["metadata"]["parsing"] == "completed"

    async def test_list(self, client: AsyncClient, app: FastAPI, sample_ioc_text):
        first = (await upload(client, "a.log", sample_ioc_text.encode())).json()["id"]
        second = (await upload(client, "b.exe", b"MZ")).json()["id"]
        await app.state.pipeline.wait(first)

        response = await client.get(BASE)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        by_id = {item["id"]: item for item in data["items"]}
        assert by_id[first]["status"] == "completed"
        assert by_id[first]["indicators_count"] > 0
        assert by_id[second]["status"] == "rejected"

    async def test_unknown(self, client: AsyncClient):
        response = await client.get(f"{BASE}/missing")

        assert response.status_code == 404
        assert response.json()["message"] == "Analysis 'missing' not found"


class TestCancel:
    """Tests for POST /analyses/{id}/cancel."""

    async def test_cancel_running(self, client: AsyncClient, app: FastAPI, sample_ioc_text):
        summarizer = BlockingSummarizer()
        app.state.pipeline.summarizer = summarizer
        analysis_id = (await upload(client, "incident.log", sample_ioc_text.encode())).json()["id"]
        await asyncio.wait_for(summarizer.started.wait(), 5)

        response = await client.post(f"{BASE}/{analysis_id}/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["error_message"] == "Analysis was cancelled"

    async def test_cancel_finished(self, client: AsyncClient):
        analysis_id = (await upload(client, "tool.exe", b"MZ")).json()["id"]

        response = await client.post(f"{BASE}/{analysis_id}/cancel")

        assert response.status_code == 400
        assert response.json()["code"] == "BAD_REQUEST"

    async def test_cancel_unknown(self, client: AsyncClient):
        response = await client.post(f"{BASE}/missing/cancel")

        assert response.status_code == 404
