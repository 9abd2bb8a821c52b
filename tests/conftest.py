"""Pytest fixtures for sale engine tests."""

import asyncio

import pytest

from config import Config
from handlers import SaleHandlers
from store import InMemoryStore


ENV_KEYS = (
    "STORE_BACKEND",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_TIMEOUT",
    "CHECKOUT_SAVE_DELAY_MS",
    "MIN_DEPOSIT_RATIO",
    "DEFAULT_LINE_CODE",
    "ORDER_NUMBER_PREFIX",
    "ENFORCE_SESSION_CODE_UNIQUENESS",
    "ENABLE_METRICS",
    "DEBUG_MODE",
    "ENV_FILE",
    "HOST",
    "PORT",
    "CORS_ORIGINS",
    "LOG_LEVEL",
)


class ScriptedConfirmation:
    """Answers merge prompts from a fixed script and records the messages."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.messages = []

    async def confirm(self, message):
        self.messages.append(message)
        if not self.answers:
            raise AssertionError(f"Unexpected confirmation prompt: {message}")
        return self.answers.pop(0)


class InterleavingStore(InMemoryStore):
    """Yields to the event loop before every operation so gathered tasks interleave."""

    async def get(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get(*args, **kwargs)

    async def find(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().find(*args, **kwargs)

    async def insert(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().insert(*args, **kwargs)

    async def upsert(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().upsert(*args, **kwargs)

    async def update(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().update(*args, **kwargs)

    async def update_where(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().update_where(*args, **kwargs)

    async def rpc(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().rpc(*args, **kwargs)


class RacingStore(InMemoryStore):
    """Runs another operator's action right after the next read of order lines."""

    def __init__(self):
        super().__init__()
        self.on_lines_read = None

    async def find(self, table, *args, **kwargs):
        rows = await super().find(table, *args, **kwargs)
        if table == "order_lines" and self.on_lines_read:
            action, self.on_lines_read = self.on_lines_read, None
            await action()
        return rows



@pytest.fixture
def clean_env(monkeypatch):
    """Remove sale engine variables so defaults apply."""
    for key in ENV_KEYS:
        # setenv first so teardown also removes values a dotenv load wrote
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    return monkeypatch


@pytest.fixture
def config(clean_env):
    return Config()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def handlers(store, config):
    return SaleHandlers(store, config)


@pytest.fixture
def live_session(handlers):
    return asyncio.run(handlers.open_session("LIVE", "Friday live"))


@pytest.fixture
def regular_session(handlers):
    return asyncio.run(handlers.open_session("REGULAR", "Shop"))


@pytest.fixture
def scripted():
    """Factory for scripted confirmation providers."""
    return ScriptedConfirmation


@pytest.fixture
def snapshot(store):
    """Copy of every row in the store, for no-write assertions."""
    def take():
        async def collect():
            tables = {}
            for table in ("customers", "customer_phones", "customer_addresses", "orders", "order_lines"):
                tables[table] = await store.find(table)
            return tables
        return asyncio.run(collect())
    return take


@pytest.fixture
def interleaving_store():
    return InterleavingStore()


@pytest.fixture
def interleaved(interleaving_store, config):
    """Handlers over an InterleavingStore, with an open live session."""
    handlers = SaleHandlers(interleaving_store, config)
    session = asyncio.run(handlers.open_session("LIVE", "Friday live"))
    return handlers, session


@pytest.fixture
def racing(config):
    """Handlers over a RacingStore, with an open live session."""
    store = RacingStore()
    handlers = SaleHandlers(store, config)
    session = asyncio.run(handlers.open_session("LIVE", "Friday live"))
    return handlers, store, session
