import httpx
import pytest
from fastapi.testclient import TestClient

from concierge_gateway.main import create_app
from concierge_gateway.services.agent_auth import ClientCredentialsAuth
from concierge_gateway.services.agent_upstream import AgentUpstream
from tests.unit.server.stubs import AGENT_BASE, ORG_URL, TOKEN_URL, Upstream

_ENV_VARS = (
    "AGENT_API_BASE_URL",
    "AGENT_API_DISABLE_DEFAULT",
    "AGENT_API_DEFAULT_BASE_URL",
    "AGENT_ASSISTANT_ID",
    "AGENT_PLATFORM_API_VERSION",
    "AGENT_PLATFORM_INSTANCE_URL",
    "AGENT_OAUTH_TOKEN_URL",
    "AGENT_OAUTH_CLIENT_ID",
    "AGENT_OAUTH_CLIENT_SECRET",
)


@pytest.fixture(autouse=True)
def agent_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AGENT_API_DEFAULT_BASE_URL", AGENT_BASE)
    monkeypatch.setenv("AGENT_ASSISTANT_ID", "asst-1")
    return monkeypatch


@pytest.fixture
def relay():
    """Factory returning ``(TestClient, Upstream)`` for a given upstream handler."""

    def factory(handler, *, token_body=None, client_id="id", client_secret="secret"):
        upstream = Upstream(handler, token_body or {"access_token": "tok-1", "instance_url": ORG_URL})
        auth = ClientCredentialsAuth(TOKEN_URL, client_id, client_secret)
        app = create_app(upstream=AgentUpstream(auth, transport=httpx.MockTransport(upstream)))
        return TestClient(app), upstream

    return factory
