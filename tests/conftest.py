"""Shared fixtures for the mail core tests."""
import pytest

from fake_mail_store import FakeClock, FakeConnector, FakeRelay, standard_store
from mail_core.auth.credentials import CredentialVault
from mail_core.config import ServiceSettings
from mail_core.core.batch import BatchCoordinator
from mail_core.core.mail_service import MailService
from mail_core.core.pool import ConnectionPool
from mail_core.core.send_pipeline import SendPipeline
from mail_core.core.synchronizer import MailboxSynchronizer
from mail_core.models import MailboxOwner, MailboxSession
from mail_core.storage.message_cache import MessageCache


OWNER_ID = "alice"
OWNER_ADDRESS = "alice@example.com"


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return standard_store()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def connector(store, relay):
    return FakeConnector(store, relay, address=OWNER_ADDRESS)


@pytest.fixture
def cache(clock):
    return MessageCache(ttl=60, clock=clock)


@pytest.fixture
def pool(connector, clock):
    pool = ConnectionPool(connector, idle_timeout=300, sweep_interval=30, clock=clock)
    yield pool
    pool.close_all()


@pytest.fixture
def synchronizer(cache):
    return MailboxSynchronizer(cache, max_page_size=200)


@pytest.fixture
def session(store, relay):
    """A bare session for exercising the synchronizer without the pool."""
    return MailboxSession(owner_id=OWNER_ID, store=store, relay=relay, address=OWNER_ADDRESS)


@pytest.fixture
def batches(synchronizer):
    return BatchCoordinator(synchronizer)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(pool, synchronizer, sleeps):
    return SendPipeline(
        pool,
        synchronizer,
        max_attempts=3,
        backoff_base=1.0,
        backoff_factor=2.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def owner():
    return MailboxOwner(owner_id=OWNER_ID)


@pytest.fixture
def service(connector, clock, sleeps):
    settings = ServiceSettings(cache_ttl=60, default_page_size=50, max_page_size=200)
    service = MailService(
        CredentialVault(),
        settings=settings,
        connector=connector,
        clock=clock,
        sleep=sleeps.append,
    )
    yield service
    service.close()
