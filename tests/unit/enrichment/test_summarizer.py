"""Unit tests for AI summarization."""

import json

import httpx
import pytest

pytestmark = pytest.mark.unit

ENDPOINT = "http://summarizer.test/v1/summarize"


def make_summarizer(handler, **kwargs):
    from evidentia.enrichment.summarizer import HttpSummarizer

    return HttpSummarizer(ENDPOINT, transport=httpx.MockTransport(handler), **kwargs)


class TestHttpSummarizer:
    """Tests for HttpSummarizer."""

    @pytest.mark.asyncio
    async def test_returns_summary(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"summary": "Beaconing to a known C2 host"})

        summarizer = make_summarizer(handler, api_key="secret")

        summary = await summarizer.summarize("log text", {"style": "brief"})

        assert summary == "Beaconing to a known C2 host"
        assert requests[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(requests[0].content) == {
            "content": "log text",
            "truncated": False,
            "options": {"style": "brief"},
        }

    @pytest.mark.asyncio
    async def test_no_api_key_no_auth_header(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"summary": "ok"})

        await make_summarizer(handler).summarize("text")

        assert "Authorization" not in requests[0].headers

    @pytest.mark.asyncio
    async def test_long_input_truncated(self):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"summary": "ok"})

        await make_summarizer(handler, max_input_chars=10).summarize("a" * 25)

        assert payloads[0]["content"] == "a" * 10
        assert payloads[0]["truncated"] is True

    @pytest.mark.asyncio
    async def test_missing_summary_returns_none(self):
        summarizer = make_summarizer(lambda request: httpx.Response(200, json={"summary": ""}))

        assert await summarizer.summarize("text") is None

    @pytest.mark.asyncio
    async def test_non_object_response_returns_none(self):
        summarizer = make_summarizer(lambda request: httpx.Response(200, json=["unexpected"]))

        assert await summarizer.summarize("text") is None

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        from evidentia.exceptions import ServiceUnavailableError

        summarizer = make_summarizer(lambda request: httpx.Response(502, json={"error": "bad gateway"}))

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await summarizer.summarize("text")

        assert exc_info.value.status_code == 503
        assert exc_info.value.message.startswith("Summarization request failed")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        from evidentia.exceptions import ServiceUnavailableError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServiceUnavailableError):
            await make_summarizer(handler).summarize("text")


class TestCreateSummarizer:
    """Tests for create_summarizer."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, test_settings):
        from evidentia.enrichment.summarizer import DisabledSummarizer, create_summarizer

        summarizer = create_summarizer(test_settings)

        assert isinstance(summarizer, DisabledSummarizer)
        assert await summarizer.summarize("text") is None

    def test_enabled_without_endpoint(self, test_settings):
        from evidentia.enrichment.summarizer import DisabledSummarizer, create_summarizer

        settings = test_settings.model_copy(update={"ai_enabled": True, "ai_endpoint": ""})

        assert isinstance(create_summarizer(settings), DisabledSummarizer)

    def test_enabled(self, test_settings):
        from evidentia.enrichment.summarizer import HttpSummarizer, create_summarizer

        settings = test_settings.model_copy(update={
            "ai_enabled": True,
            "ai_endpoint": ENDPOINT,
            "ai_api_key": "secret",
            "ai_timeout_seconds": 5.0,
            "ai_max_input_chars": 1000,
        })

        summarizer = create_summarizer(settings)

        assert isinstance(summarizer, HttpSummarizer)
        assert summarizer.endpoint == ENDPOINT
        assert summarizer.api_key == "secret"
        assert summarizer.timeout == 5.0
        assert summarizer.max_input_chars == 1000
