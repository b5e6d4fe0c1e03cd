import asyncio
import os
import sys
import tempfile
import unittest

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from db import database as db_database  # noqa: E402
from db.stores import (  # noqa: E402
    SqliteInventoryStore,
    SqliteReceiptStore,
    SqliteSalesStore,
    StoreError,
)


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Points the store at a fresh temporary SQLite file for every test."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.sqlite")
        db_database.DB_PATH = self.db_path
        db_database._initialized = False

    async def asyncSetUp(self):
        # Touch initialization by opening a connection
        async with db_database.connect() as conn:
            cur = await conn.execute("SELECT name FROM sqlite_master WHERE type='table';")
            await cur.fetchall()
            await cur.close()

    def tearDown(self):
        self.temp_dir.cleanup()


class CountingInventoryStore(SqliteInventoryStore):
    """Records every decrement and increment that reaches the store."""

    def __init__(self):
        self.decrements = []
        self.increments = []

    async def conditional_decrement(self, item_id, amount):
        self.decrements.append((item_id, amount))
        return await super().conditional_decrement(item_id, amount)

    async def increment(self, item_id, amount):
        self.increments.append((item_id, amount))
        return await super().increment(item_id, amount)


class FlakyInventoryStore(CountingInventoryStore):
    """Fails the n-th decrement (1-based) and, optionally, every increment."""

    def __init__(self, fail_on_decrement=None, fail_increments=False):
        super().__init__()
        self.fail_on_decrement = fail_on_decrement
        self.fail_increments = fail_increments

    async def conditional_decrement(self, item_id, amount):
        if len(self.decrements) + 1 == self.fail_on_decrement:
            self.decrements.append((item_id, amount))
            raise StoreError("database is locked")
        return await super().conditional_decrement(item_id, amount)

    async def increment(self, item_id, amount):
        if self.fail_increments:
            self.increments.append((item_id, amount))
            raise StoreError("disk I/O error")
        return await super().increment(item_id, amount)


class GatedInventoryStore(SqliteInventoryStore):
    """Pauses after the first decrement until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def conditional_decrement(self, item_id, amount):
        item = await super().conditional_decrement(item_id, amount)
        self.entered.set()
        await self.release.wait()
        return item


class FlakySalesStore(SqliteSalesStore):
    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    async def add(self, sale):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise StoreError("record sale failed: database is locked")
        return await super().add(sale)


class FlakyReceiptStore(SqliteReceiptStore):
    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    async def add_if_absent(self, receipt):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise StoreError("record receipt failed: database is locked")
        return await super().add_if_absent(receipt)
