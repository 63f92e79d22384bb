import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from relay.services.live_broadcast import EventBroadcaster  # noqa: E402
from relay.services.registry import ConnectionRegistry  # noqa: E402
from fakes import AdapterFactory  # noqa: E402


@pytest.fixture
def factory() -> AdapterFactory:
    return AdapterFactory()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry(buffer_size=100, disconnect_timeout=1.0)


@pytest.fixture
def broadcaster(registry: ConnectionRegistry) -> EventBroadcaster:
    return EventBroadcaster(registry, queue_maxsize=1000)
