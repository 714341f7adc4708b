from typing import Any, Callable

import httpx
import pytest

from concierge_gateway.client.agent_client import AgentClient
from concierge_gateway.client.models import Session

RELAY_BASE = "http://relay.test/api/agent"
INSTANCE = "https://instance.test"


@pytest.fixture
def make_client() -> Callable[..., AgentClient]:
    def factory(handler: Callable[[httpx.Request], Any]) -> AgentClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return AgentClient(RELAY_BASE, assistant_id="asst-1", instance_endpoint=INSTANCE, http_client=http)

    return factory


@pytest.fixture
def session() -> Session:
    return Session(id="sess-1", assistant_id="asst-1", endpoint=INSTANCE)
