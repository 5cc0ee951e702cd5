import pytest

from missionagent.gemini import GeminiError
from missionagent.providers import ProviderError, ProviderGateway, format_serper, format_tavily
from tests.fakes import GOOD_SERPER_RESPONSE, GOOD_TAVILY_RESPONSE, FakeGeminiClient, FakeSerperClient, FakeTavilyClient


def test_format_tavily_includes_answer_and_results():
    text = format_tavily(GOOD_TAVILY_RESPONSE)
    assert text.startswith("Tavily Search Results:\nTavily Answer: Photosynthesis")
    assert "1. Photosynthesis overview" in text
    assert "URL: https://example.org/photosynthesis" in text
    assert format_tavily({"results": []}) == "Tavily Search returned no meaningful results."


def test_format_serper_lists_organic_results():
    text = format_serper(GOOD_SERPER_RESPONSE)
    assert text.splitlines()[0] == "Serper Search Results:"
    assert "Link: https://example.org/docs" in text
    assert format_serper({}) == "Serper Search returned no results."


def test_long_snippets_are_truncated():
    response = {"organic": [{"title": "T", "link": "L", "snippet": "x" * 500}]}
    snippet_line = format_serper(response).splitlines()[-1]
    assert snippet_line.endswith("...")
    assert len(snippet_line) < 250


def test_available_providers_follow_configured_keys():
    gateway = ProviderGateway(
        tavily=FakeTavilyClient(api_key=None),
        serper=FakeSerperClient(),
        gemini=FakeGeminiClient(),
    )
    assert gateway.available_providers() == ["serper", "gemini"]
    assert ProviderGateway().available_providers() == []


@pytest.mark.asyncio
async def test_missing_key_returns_configuration_text():
    gateway = ProviderGateway(tavily=FakeTavilyClient(api_key=None))
    assert await gateway.search("tavily", "tides") == "Configuration error: Tavily API key not configured."
    assert await gateway.search("serper", "tides") == "Configuration error: Serper API key not configured."


@pytest.mark.asyncio
async def test_http_error_becomes_provider_error_with_status():
    tavily = FakeTavilyClient(responses=[{"error": "http_status", "status_code": 401, "detail": {"detail": "bad key"}}])
    gateway = ProviderGateway(tavily=tavily)
    with pytest.raises(ProviderError) as excinfo:
        await gateway.search("tavily", "tides")
    assert excinfo.value.status == 401
    assert excinfo.value.provider == "tavily"
    assert str(excinfo.value) == "Tavily API request failed with status 401: bad key"


@pytest.mark.asyncio
async def test_network_error_has_no_status():
    serper = FakeSerperClient(responses=[{"error": "request_failed", "detail": "ConnectTimeout"}])
    with pytest.raises(ProviderError) as excinfo:
        await ProviderGateway(serper=serper).search("serper", "tides")
    assert excinfo.value.status is None
    assert "Serper network error: ConnectTimeout" in str(excinfo.value)


@pytest.mark.asyncio
async def test_gemini_synthesis_and_errors():
    gemini = FakeGeminiClient(
        responses=["  Tides are driven by the moon.  ", "", GeminiError("Gemini API request failed with status 503: busy", 503)]
    )
    gateway = ProviderGateway(gemini=gemini)
    assert await gateway.search("gemini", "tides") == "Gemini Synthesized Answer:\nTides are driven by the moon."
    assert await gateway.search("gemini", "tides") == "Gemini Search did not produce results."
    with pytest.raises(ProviderError) as excinfo:
        await gateway.search("gemini", "tides")
    assert excinfo.value.status == 503


@pytest.mark.asyncio
async def test_unknown_provider_raises():
    with pytest.raises(ProviderError):
        await ProviderGateway().search("bing", "tides")


@pytest.mark.asyncio
async def test_close_closes_every_client():
    clients = [FakeTavilyClient(), FakeSerperClient(), FakeGeminiClient()]
    await ProviderGateway(*clients).close()
    assert all(c.closed for c in clients)
