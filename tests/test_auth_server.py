"""Tests for the local authorization flow server."""

import os
import socket

import httpx
import pytest
from aiohttp.test_utils import make_mocked_request
from authlib.integrations.base_client import OAuthError
from conftest import FakeOAuthClient, free_port, free_ports

from gcal_auth.google import AuthServer, FlowState, TokenManager


class FlowClients:
    """Records the flow-specific clients the server builds."""

    def __init__(self, **client_kwargs):
        self.client_kwargs = client_kwargs
        self.created = []

    def __call__(self, config, redirect_uri=None, **kwargs):
        client = FakeOAuthClient(config, redirect_uri=redirect_uri, **self.client_kwargs)
        self.created.append(client)
        return client


@pytest.fixture
def flow_clients():
    return FlowClients()


@pytest.fixture
def opened_urls():
    return []


@pytest.fixture
def make_server(manager, keys_path, flow_clients, opened_urls):
    def factory(ports=None, keys=keys_path, clients=flow_clients):
        server = AuthServer(
            manager,
            keys_path=keys,
            ports=ports if ports is not None else [free_port()],
            host="127.0.0.1",
            client_factory=clients,
            browser=opened_urls.append,
        )
        return server

    return factory


def occupy(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen(1)
    return sock


def port_is_free(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


async def get(port, path, **params):
    async with httpx.AsyncClient() as client:
        return await client.get(f"http://127.0.0.1:{port}{path}", params=params)


class TestStart:
    """Test starting the listener."""

    @pytest.mark.asyncio
    async def test_already_valid_does_not_bind(self, make_server, store, valid_record):
        """Should complete without a listener when tokens are valid."""
        store.save(valid_record)
        server = make_server()

        assert await server.start() is True

        assert server.state is FlowState.COMPLETED
        assert server.completed is True
        assert server.running_port() is None

    @pytest.mark.asyncio
    async def test_binds_and_waits_for_callback(
        self, make_server, flow_clients, opened_urls
    ):
        """Should bind a port, build a flow client and open the browser."""
        port = free_port()
        server = make_server(ports=[port])

        assert await server.start() is True
        try:
            assert server.state is FlowState.AWAITING_CALLBACK
            assert server.running_port() == port
            assert flow_clients.created[0].redirect_uri == (
                f"http://localhost:{port}/oauth2callback"
            )
            assert len(opened_urls) == 1
            assert "access_type=offline" in opened_urls[0]
            assert "prompt=consent" in opened_urls[0]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_no_browser(self, make_server, opened_urls):
        """Should not open a browser when asked not to."""
        server = make_server()

        assert await server.start(open_browser=False) is True
        await server.stop()

        assert opened_urls == []

    @pytest.mark.asyncio
    async def test_skips_occupied_port(self, make_server):
        """Should move on to the next candidate when a port is taken."""
        busy, free = sorted(free_ports(2))
        blocker = occupy(busy)
        try:
            server = make_server(ports=[busy, free])
            assert await server.start(open_browser=False) is True
            assert server.running_port() == free
            await server.stop()
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_all_ports_occupied(self, make_server):
        """Should fail cleanly when every candidate port is taken."""
        ports = free_ports(2)
        blockers = [occupy(p) for p in ports]
        try:
            server = make_server(ports=ports)
            assert await server.start(open_browser=False) is False
            assert server.state is FlowState.FAILED
            assert server.running_port() is None
            assert "No port available" in server.last_error
        finally:
            for blocker in blockers:
                blocker.close()

    @pytest.mark.asyncio
    async def test_missing_keys_fails_and_releases_port(self, make_server, tmp_path):
        """Should fail and free the port when OAuth keys cannot be loaded."""
        port = free_port()
        server = make_server(ports=[port], keys=tmp_path / "missing.json")

        assert await server.start(open_browser=False) is False

        assert server.state is FlowState.FAILED
        assert server.running_port() is None
        assert port_is_free(port)

    @pytest.mark.asyncio
    async def test_start_twice_reuses_listener(self, make_server):
        """Should not bind a second port while already listening."""
        server = make_server()
        await server.start(open_browser=False)
        port = server.running_port()

        assert await server.start(open_browser=False) is True
        assert server.running_port() == port
        await server.stop()


class TestStop:
    """Test stopping the listener."""

    @pytest.mark.asyncio
    async def test_stop_releases_port(self, make_server, flow_clients):
        """Should free the port before returning."""
        server = make_server()
        await server.start(open_browser=False)
        port = server.running_port()

        await server.stop()

        assert server.running_port() is None
        assert port_is_free(port)
        assert flow_clients.created[0].closed is True

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_server):
        """Should allow stopping a server that is not running."""
        server = make_server()
        await server.stop()
        await server.start(open_browser=False)
        await server.stop()
        await server.stop()


class TestRoutes:
    """Test the HTTP handlers."""

    @pytest.mark.asyncio
    async def test_root_before_flow_uses_base_client(self, make_server):
        """Should render a link from the base client before start()."""
        server = make_server()

        response = await server._handle_root(make_mocked_request("GET", "/"))

        assert response.status == 200
        assert "Authenticate with Google" in response.text
        assert "client_id=test-client-id" in response.text

    @pytest.mark.asyncio
    async def test_root_uses_flow_client(self, make_server):
        """Should link to the flow client's redirect URI once started."""
        server = make_server()
        await server.start(open_browser=False)
        port = server.running_port()
        try:
            response = await get(port, "/")
        finally:
            await server.stop()

        assert response.status_code == 200
        assert f"localhost%3A{port}%2Foauth2callback" in response.text

    @pytest.mark.asyncio
    async def test_callback_without_code(self, make_server, store):
        """Should answer 400 and keep waiting for a callback."""
        server = make_server()
        await server.start(open_browser=False)
        try:
            response = await get(server.running_port(), "/oauth2callback")
            assert response.status_code == 400
            assert "Authorization code missing" in response.text
            assert server.state is FlowState.AWAITING_CALLBACK
            assert not store.exists()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_callback_before_flow(self, make_server):
        """Should answer 500 if no flow client exists."""
        server = make_server()
        request = make_mocked_request("GET", "/oauth2callback?code=abc")

        response = await server._handle_callback(request)

        assert response.status == 500
        assert server.state is FlowState.IDLE

    @pytest.mark.asyncio
    async def test_callback_success(self, make_server, flow_clients, store, token_path):
        """Should exchange the code, save tokens and report the file location."""
        server = make_server()
        await server.start(open_browser=False)
        try:
            response = await get(server.running_port(), "/oauth2callback", code="auth-code")
        finally:
            await server.stop()

        assert response.status_code == 200
        assert "Authentication Successful!" in response.text
        assert str(token_path) in response.text
        assert flow_clients.created[0].fetch_calls == ["auth-code"]
        assert server.state is FlowState.COMPLETED

        saved = store.load()
        assert saved.access_token == "new-access-token"
        assert saved.refresh_token == "new-refresh-token"

    @pytest.mark.asyncio
    async def test_callback_exchange_failure(self, make_server, store):
        """Should render the error, mark failed and keep listening."""
        clients = FlowClients(
            exchange_error=OAuthError(error="invalid_grant", description="Malformed auth code.")
        )
        server = make_server(clients=clients)
        await server.start(open_browser=False)
        try:
            response = await get(server.running_port(), "/oauth2callback", code="bad")
            assert response.status_code == 500
            assert "Authentication Failed" in response.text
            assert "invalid_grant" in response.text
            assert server.state is FlowState.FAILED
            assert server.running_port() is not None
            assert not store.exists()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, make_server):
        """Should complete on a later successful callback."""
        clients = FlowClients(exchange_error=OAuthError(error="invalid_grant"))
        server = make_server(clients=clients)
        await server.start(open_browser=False)
        port = server.running_port()
        try:
            await get(port, "/oauth2callback", code="bad")
            clients.created[0].exchange_error = None
            response = await get(port, "/oauth2callback", code="good")
        finally:
            await server.stop()

        assert response.status_code == 200
        assert server.state is FlowState.COMPLETED


@pytest.mark.skipif(os.name == "nt", reason="POSIX file permissions only")
@pytest.mark.asyncio
async def test_full_flow_from_empty_store(manager, keys_path, store, opened_urls):
    """Empty store, valid keys, user completes the browser step."""
    flow_clients = FlowClients()
    port = free_port()
    server = AuthServer(
        manager,
        keys_path=keys_path,
        ports=[port],
        host="127.0.0.1",
        client_factory=flow_clients,
        browser=opened_urls.append,
    )

    assert await server.start() is True
    response = await get(port, "/oauth2callback", code="from-browser")
    await server.stop()

    assert response.status_code == 200
    assert server.state is FlowState.COMPLETED
    assert port_is_free(port)
    assert store.path.stat().st_mode & 0o777 == 0o600
    saved = store.load()
    assert saved.access_token and saved.refresh_token
    assert await manager.validate() is True


def test_server_uses_token_manager_client(fake_client, store, keys_path):
    """Should treat the token manager's client as the base client."""
    manager = TokenManager(fake_client, store=store)
    server = AuthServer(manager, keys_path=keys_path, ports=[3000])
    assert server.base_client is fake_client
    assert server.state is FlowState.IDLE
