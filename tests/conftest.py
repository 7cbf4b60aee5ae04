import httpx
import pytest

from guide.application.api.api_server import ServiceContainer
from guide.config import Settings
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.persistence.signal_store import InMemorySignalStore, InMemoryUserDirectory
from tests.helpers import UPSTREAM_URL, FakeUpstream


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="test-key",
        openai_base_url=UPSTREAM_URL,
        internal_api_key="internal-secret",
        max_recent_messages=4,
        log_format="console",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def openai_client(upstream: FakeUpstream) -> OpenAIClient:
    return OpenAIClient(
        "test-key",
        UPSTREAM_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )


@pytest.fixture
def signal_store() -> InMemorySignalStore:
    return InMemorySignalStore()


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture
def container(settings, upstream) -> ServiceContainer:
    return ServiceContainer(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
