from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from staffing.api import create_app
from staffing.config import Settings
from staffing.database import LifecycleStore
from staffing.models import Organizer, Shift, Therapist

NOW = "2025-07-01 08:00:00"

SHIFT_START = datetime(2025, 7, 3, 8, 0, 0, tzinfo=UTC)  # +48h from NOW
SHIFT_END = datetime(2025, 7, 3, 12, 0, 0, tzinfo=UTC)


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _deliveries(transport) -> list[tuple[str, str]]:
    """(recipient, subject) for every email handed to the transport."""
    sent = []
    for args, _kw in transport.deliver.await_args_list:
        to, subject, _text = args
        sent.append((to, subject))
    _p(f"deliveries ({len(sent)}):")
    for to, subject in sent:
        _p(f"  - {to}: {subject}")
    return sent


def seed(store: LifecycleStore) -> None:
    store.put_therapist(Therapist(id="tina-id", name="Tina Moreau", email="tina@example.com"))
    store.put_therapist(Therapist(id="sam-id", name="Sam Okafor", email="sam@example.com"))
    store.put_organizer(
        Organizer(id="org-id", name="Riverside Youth League", email="events@riverside.example")
    )
    store.put_organizer(
        Organizer(id="other-org-id", name="Hilltop School", email="office@hilltop.example")
    )
    store.put_shift(
        Shift(
            id="shift-1",
            organizer_id="org-id",
            title="U14 Soccer Tournament",
            start_time=SHIFT_START,
            end_time=SHIFT_END,
            location="Toronto, ON",
            address="100 Queen St W",
            hourly_rate=60.0,
        )
    )


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def transport():
    """Stand-in email transport: every delivery succeeds."""
    fake = Mock()
    fake.deliver = AsyncMock(return_value=True)
    fake.aclose = AsyncMock(return_value=None)
    return fake


@pytest_asyncio.fixture
async def client(settings, transport):
    app = create_app(settings)
    app.state.dispatcher.transport = transport
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client

    # let any in-flight notifications finish
    await app.state.outbox.drain()


@pytest_asyncio.fixture
async def setup_test_data(client: AsyncClient):
    app = client._transport.app
    seed(app.state.store)
