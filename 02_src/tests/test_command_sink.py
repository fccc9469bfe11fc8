"""Tests for HTTPCommandSink."""

import json

import httpx
import pytest

from agent_supervisor.commands import AgentCommand, CommandKind, HTTPCommandSink
from agent_supervisor.errors import CommandDeliveryFailed


def _sink(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HTTPCommandSink(client=client), client


class TestHTTPCommandSink:
    """Tests for command delivery over HTTP."""

    async def test_posts_command_json(self):
        """Test the command is POSTed to the agent's command URL."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        sink, client = _sink(handler)
        command = AgentCommand(
            agent_id="a1",
            kind=CommandKind.PARAMETER_UPDATE,
            params={"action": "clear_cache", "level": 1},
            target_url="http://a1.local/commands",
        )
        await sink.send(command)
        await client.aclose()

        assert len(requests) == 1
        assert str(requests[0].url) == "http://a1.local/commands"
        body = json.loads(requests[0].content)
        assert body["kind"] == "parameter_update"
        assert body["params"]["action"] == "clear_cache"
        assert body["id"] == command.id

    async def test_missing_url_fails(self):
        """Test agents without a command URL cannot be reached."""
        sink, client = _sink(lambda request: httpx.Response(200))
        with pytest.raises(CommandDeliveryFailed) as exc_info:
            await sink.send(AgentCommand(agent_id="a1", kind=CommandKind.FORCE_RESTART))
        await client.aclose()
        assert exc_info.value.command == "force_restart"

    async def test_server_error_fails(self):
        """Test a non-2xx response is a delivery failure."""
        sink, client = _sink(lambda request: httpx.Response(500))
        with pytest.raises(CommandDeliveryFailed):
            await sink.send(
                AgentCommand(agent_id="a1", kind=CommandKind.GRACEFUL_STOP, target_url="http://a1/c")
            )
        await client.aclose()

    async def test_transport_error_fails(self):
        """Test connection errors are delivery failures."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        sink, client = _sink(handler)
        with pytest.raises(CommandDeliveryFailed) as exc_info:
            await sink.send(
                AgentCommand(agent_id="a1", kind=CommandKind.GRACEFUL_STOP, target_url="http://a1/c")
            )
        await client.aclose()
        assert "refused" in exc_info.value.reason

    async def test_close_leaves_injected_client(self):
        """Test the sink only closes clients it created."""
        sink, client = _sink(lambda request: httpx.Response(200))
        await sink.close()
        assert not client.is_closed
        await client.aclose()
