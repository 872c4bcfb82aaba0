"""Unit tests for plugins/providers/http.py - REST provider."""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from errors import PermanentProviderError, TransientProviderError
from plugins.providers.http import HTTPProvider, parse_type_config

TYPES = {
    "network.vpc": {"path": "/vpcs", "immutable": ["cidr"]},
    "network.subnet": {"schema": {"type": "object"}},
}


@pytest_asyncio.fixture
async def provider():
    provider = HTTPProvider()
    await provider.initialize(
        {"base_url": "http://api.test/", "token": "secret", "resource_types": TYPES}
    )
    return provider


def mock_http(mock_session_cls, status=200, body=""):
    """Wire a mocked ClientSession returning one response."""
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.text = AsyncMock(return_value=body)

    mock_session = AsyncMock()
    mock_session.request = MagicMock(
        return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_resp),
            __aexit__=AsyncMock(return_value=False),
        )
    )

    mock_session_cls.return_value = AsyncMock(
        __aenter__=AsyncMock(return_value=mock_session),
        __aexit__=AsyncMock(return_value=False),
    )
    return mock_session


class TestParseTypeConfig:
    """Tests for parse_type_config."""

    def test_parse(self):
        types = parse_type_config(TYPES)

        assert types["network.vpc"].immutable_attributes == frozenset({"cidr"})
        assert types["network.subnet"].attributes_schema == {"type": "object"}
        assert types["network.subnet"].immutable_attributes == frozenset()

    def test_types_from_env(self, monkeypatch):
        monkeypatch.setenv("HTTP_PROVIDER_TYPES", json.dumps(TYPES))
        assert sorted(HTTPProvider().resource_types) == ["network.subnet", "network.vpc"]

    def test_invalid_types_env_ignored(self, monkeypatch):
        monkeypatch.setenv("HTTP_PROVIDER_TYPES", "{broken")
        assert HTTPProvider().resource_types == {}


@pytest.mark.asyncio
class TestHTTPProvider:
    """Tests for the HTTP provider verbs."""

    async def test_create(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls, 201, '{"id": "vpc-1", "cidr": "x"}')

            physical_id = await provider.create("network.vpc", {"cidr": "x"})

        assert physical_id == "vpc-1"
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "http://api.test/vpcs")
        assert session.request.call_args.kwargs["json"] == {"cidr": "x"}
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret"

    async def test_create_custom_id_field(self, provider):
        provider.id_field = "uuid"
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, 200, '{"uuid": 42}')

            assert await provider.create("network.vpc", {}) == "42"

    async def test_create_without_id(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, 200, '{"cidr": "x"}')

            with pytest.raises(PermanentProviderError, match="no 'id' field"):
                await provider.create("network.vpc", {})

    async def test_default_collection_path(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls, 200, '{"id": "s-1"}')

            await provider.read("network.subnet", "s-1")

        assert session.request.call_args.args == (
            "GET",
            "http://api.test/network/subnet/s-1",
        )

    async def test_update(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls, 200, '{"id": "vpc-1", "cidr": "y"}')

            outputs = await provider.update("network.vpc", "vpc-1", {"cidr": "y"})

        assert outputs == {"id": "vpc-1", "cidr": "y"}
        assert session.request.call_args.args[0] == "PUT"

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_status(self, provider, status):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, status, "try later")

            with pytest.raises(TransientProviderError):
                await provider.read("network.vpc", "vpc-1")

    @pytest.mark.parametrize("status", [400, 403, 404])
    async def test_permanent_status(self, provider, status):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, status, "nope")

            with pytest.raises(PermanentProviderError):
                await provider.read("network.vpc", "vpc-1")

    async def test_delete_already_gone(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls, 404, "")

            await provider.delete("network.vpc", "vpc-1")

        assert session.request.call_args.args[0] == "DELETE"

    async def test_delete_empty_body(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, 204, "")

            await provider.delete("network.vpc", "vpc-1")

    async def test_connection_error_is_transient(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls)
            session.request.side_effect = aiohttp.ClientConnectionError("refused")

            with pytest.raises(TransientProviderError):
                await provider.read("network.vpc", "vpc-1")

    async def test_timeout_is_transient(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            session = mock_http(mock_session_cls)
            session.request.side_effect = asyncio.TimeoutError()

            with pytest.raises(TransientProviderError):
                await provider.read("network.vpc", "vpc-1")

    async def test_non_json_body(self, provider):
        with patch("plugins.providers.http.aiohttp.ClientSession") as mock_session_cls:
            mock_http(mock_session_cls, 200, "<html>")

            with pytest.raises(PermanentProviderError):
                await provider.read("network.vpc", "vpc-1")

    async def test_unsupported_type(self, provider):
        with pytest.raises(PermanentProviderError):
            await provider.read("storage.bucket", "b-1")

    async def test_no_token_header(self, provider):
        provider.token = ""
        assert "Authorization" not in provider._get_headers()
