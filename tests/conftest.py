import warnings

import pytest

from camrelay.app_config import AppEnvironConfig
from camrelay.domain.relay.capture import CaptureManager
from camrelay.domain.relay.reconnect import ReconnectionSupervisor
from camrelay.domain.relay.registry import MultiSessionRegistry
from tests.fakes import FakeCaptureFactory, FakeConnector, FakePeerFactory, RecordingSleep

# aiortc pulls in deprecated crypto APIs on some platforms
warnings.filterwarnings("ignore", category=DeprecationWarning, module="aiortc.*")


@pytest.fixture
def relay_config() -> AppEnvironConfig:
    return AppEnvironConfig(
        VIEWER_ID="console-1",
        NEGOTIATION_TIMEOUT_SECONDS=5,
        RECONNECT_BASE_DELAY_SECONDS=1,
        RECONNECT_FACTOR=2,
        RECONNECT_MAX_DELAY_SECONDS=30,
        REQUEST_STALE_SECONDS=30,
        MAX_CONCURRENT_SESSIONS=3,
        DEMO_MODE=True,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def peer_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def supervisor(connector, sleeps, relay_config) -> ReconnectionSupervisor:
    return ReconnectionSupervisor.from_config(connector, relay_config, sleep=sleeps)


@pytest.fixture
def capture_factory() -> FakeCaptureFactory:
    return FakeCaptureFactory()


@pytest.fixture
def capture(capture_factory) -> CaptureManager:
    return CaptureManager(capture_factory)


@pytest.fixture
async def registry(supervisor, peer_factory, relay_config):
    registry = MultiSessionRegistry(
        supervisor=supervisor,
        peer_factory=peer_factory,
        config=relay_config,
    )
    yield registry
    await registry.stop_all()
