import asyncio

import pytest

from proofsnap.core.errors import NetworkError, StorageError
from proofsnap.core.index import InMemoryIndex
from proofsnap.core.retry import RetryPolicy
from proofsnap.core.storage import InMemoryContentStore
from proofsnap.services.coordinator import ProofContext, ProofCoordinator
from proofsnap.services.identity import identity_of
from proofsnap.services.ledger import InMemoryLedger

CREATOR_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
CREATOR = identity_of(CREATOR_KEY)
OTHER = identity_of(OTHER_KEY)

HELLO = bytes.fromhex("68656c6c6f")
HELLO_DIGEST = "0x2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def fast_policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, initial_delay=0, max_delay=0)


def make_context(ledger=None, content_store=None, index=None, policy=None):
    return ProofContext(
        ledger=ledger or InMemoryLedger(),
        content_store=content_store or InMemoryContentStore(),
        index=index or InMemoryIndex(),
        retry_policy=policy or fast_policy(),
    )


class FlakyLedger(InMemoryLedger):
    """Fails the first ``failures`` writes with the given error."""

    def __init__(self, failures=0, error_factory=None):
        super().__init__()
        self.failures = failures
        self.error_factory = error_factory or (lambda: NetworkError("connection reset"))
        self.write_attempts = 0

    async def write(self, digest, location_claim, device_claim):
        self.write_attempts += 1
        if self.write_attempts <= self.failures:
            raise self.error_factory()
        return await super().write(digest, location_claim, device_claim)


class LostResponseLedger(InMemoryLedger):
    """The first write lands, but its caller sees a connection reset."""

    def __init__(self):
        super().__init__()
        self.write_attempts = 0

    async def write(self, digest, location_claim, device_claim):
        self.write_attempts += 1
        receipt = await super().write(digest, location_claim, device_claim)
        if self.write_attempts == 1:
            raise NetworkError("connection reset by peer")
        return receipt


class GatedLedger(InMemoryLedger):
    """Ledger whose writes wait until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def write(self, digest, location_claim, device_claim):
        self.entered.set()
        await self.gate.wait()
        return await super().write(digest, location_claim, device_claim)


class GatedContentStore(InMemoryContentStore):
    """Content store whose uploads wait until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def upload(self, content, filename):
        self.entered.set()
        await self.gate.wait()
        return await super().upload(content, filename)


class FailingContentStore(InMemoryContentStore):
    def __init__(self, error_factory):
        super().__init__()
        self.error_factory = error_factory
        self.attempts = 0

    async def upload(self, content, filename):
        self.attempts += 1
        raise self.error_factory()


class BrokenIndex(InMemoryIndex):
    """Index whose writes and/or reads fail."""

    def __init__(self, fail_upsert=True, fail_get=False):
        super().__init__()
        self.fail_upsert = fail_upsert
        self.fail_get = fail_get

    def _upsert_sync(self, entry):
        if self.fail_upsert:
            raise StorageError("index unavailable")
        return super()._upsert_sync(entry)

    def _get_sync(self, key):
        if self.fail_get:
            raise NetworkError("index unreachable")
        return super()._get_sync(key)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def index():
    return InMemoryIndex()


@pytest.fixture
def context(ledger, content_store, index):
    return make_context(ledger=ledger, content_store=content_store, index=index)


@pytest.fixture
def coordinator(context):
    return ProofCoordinator(context)
