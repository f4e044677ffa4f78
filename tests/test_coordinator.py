import asyncio

import pytest

from proofsnap import config
from proofsnap.core.errors import (
    AlreadyRegisteredError,
    ErrorKind,
    InsufficientFundsError,
    MintError,
    MintStage,
    NetworkError,
    RegistrationInProgressError,
    StorageError,
    ValidationError,
)
from proofsnap.models.proof import Attribution, IndexEntry, MintState
from proofsnap.services.coordinator import ProofCoordinator
from proofsnap.services.identity import sign_digest
from proofsnap.services.ledger import InMemoryLedger
from conftest import (
    CREATOR,
    CREATOR_KEY,
    HELLO,
    HELLO_DIGEST,
    OTHER_KEY,
    BrokenIndex,
    FailingContentStore,
    FlakyLedger,
    GatedContentStore,
    GatedLedger,
    LostResponseLedger,
    make_context,
)


def test_mint_hello_then_verify_by_digest(coordinator, ledger, content_store):
    async def scenario():
        minted = await coordinator.mint(HELLO, CREATOR)
        return minted, await coordinator.verify(minted.digest)

    minted, verified = asyncio.run(scenario())

    assert minted.digest == HELLO_DIGEST
    assert not minted.signed
    assert not minted.index_degraded
    assert minted.states == [MintState.RECEIVED, MintState.HASHED, MintState.STORED,
                             MintState.ANCHORED, MintState.INDEXED, MintState.DONE]
    assert ledger.write_count == 1
    assert content_store.upload_count == 1

    assert verified.verified
    assert verified.proof.creator == ledger.caller_identity
    assert verified.proof.attribution == Attribution.LEDGER_CALLER
    assert verified.proof.signer is None
    assert verified.proof.locator == minted.locator
    assert verified.ledger_proof.digest == HELLO_DIGEST


def test_missing_claims_use_named_defaults(coordinator, ledger):
    asyncio.run(coordinator.mint(HELLO, CREATOR))
    proof = ledger.proofs[HELLO_DIGEST]
    assert proof.location_claim == config.DEFAULT_LOCATION_CLAIM
    assert proof.device_claim == config.DEFAULT_DEVICE_CLAIM


def test_second_mint_is_already_registered_without_reupload(coordinator, ledger, content_store):
    async def scenario():
        await coordinator.mint(HELLO, CREATOR, location_claim="loc1", device_claim="dev1")
        original = await ledger.read(HELLO_DIGEST)
        with pytest.raises(MintError) as exc:
            await coordinator.mint(HELLO, CREATOR, location_claim="loc2", device_claim="dev2")
        return original, exc.value, await coordinator.verify(HELLO_DIGEST)

    original, error, verified = asyncio.run(scenario())

    assert error.stage == MintStage.ANCHOR
    assert isinstance(error.cause, AlreadyRegisteredError)
    assert error.status_code == 409
    assert not error.transient
    assert ledger.write_count == 1
    assert content_store.upload_count == 1
    assert verified.verified
    assert verified.ledger_proof == original
    assert verified.proof.location_claim == "loc1"


def test_signed_mint_is_attributed_to_signer(coordinator):
    signature = sign_digest(HELLO_DIGEST, CREATOR_KEY)

    async def scenario():
        minted = await coordinator.mint(HELLO, CREATOR, signature=signature)
        return minted, await coordinator.verify(minted.locator)

    minted, verified = asyncio.run(scenario())

    assert minted.signed
    assert MintState.SIGNATURE_CHECKED in minted.states
    assert verified.verified
    assert verified.proof.attribution == Attribution.SIGNED
    assert verified.proof.signer == CREATOR


def test_invalid_signature_stops_before_storage(coordinator, ledger, content_store):
    signature = sign_digest(HELLO_DIGEST, OTHER_KEY)

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR, signature=signature))

    assert exc.value.stage == MintStage.SIGN
    assert exc.value.kind == ErrorKind.AUTHENTICATION
    assert content_store.upload_count == 0
    assert ledger.write_count == 0


def test_invalid_identity_is_validation_error(coordinator):
    with pytest.raises(ValidationError):
        asyncio.run(coordinator.mint(HELLO, "alice"))


def test_oversized_content_rejected_at_hash_stage(coordinator, content_store, monkeypatch):
    monkeypatch.setattr(config, "MAX_CONTENT_SIZE", 4)
    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert exc.value.stage == MintStage.HASH
    assert exc.value.kind == ErrorKind.VALIDATION
    assert exc.value.status_code == 400
    assert content_store.upload_count == 0


def test_transient_ledger_failures_are_retried():
    ledger = FlakyLedger(failures=2)
    coordinator = ProofCoordinator(make_context(ledger=ledger))

    minted = asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert ledger.write_attempts == 3
    assert ledger.write_count == 1
    assert minted.digest == HELLO_DIGEST


def test_exhausted_ledger_retries_surface_as_network_error():
    ledger = FlakyLedger(failures=10)
    coordinator = ProofCoordinator(make_context(ledger=ledger))

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert exc.value.stage == MintStage.ANCHOR
    assert isinstance(exc.value.cause, NetworkError)
    assert exc.value.transient
    assert ledger.write_attempts == 3


def test_insufficient_funds_is_not_retried():
    ledger = FlakyLedger(failures=10, error_factory=lambda: InsufficientFundsError("no gas"))
    coordinator = ProofCoordinator(make_context(ledger=ledger))

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert isinstance(exc.value.cause, InsufficientFundsError)
    assert ledger.write_attempts == 1


def test_storage_failure_reports_store_stage_and_skips_anchor():
    ledger = InMemoryLedger()
    store = FailingContentStore(lambda: StorageError("rejected"))
    coordinator = ProofCoordinator(make_context(ledger=ledger, content_store=store))

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert exc.value.stage == MintStage.STORE
    assert exc.value.kind == ErrorKind.STORAGE
    assert store.attempts == 1
    assert ledger.write_count == 0


def test_index_failure_is_degraded_success():
    ledger = InMemoryLedger()
    coordinator = ProofCoordinator(make_context(ledger=ledger, index=BrokenIndex()))

    async def scenario():
        minted = await coordinator.mint(HELLO, CREATOR)
        return minted, await coordinator.verify(HELLO_DIGEST)

    minted, verified = asyncio.run(scenario())

    assert minted.index_degraded
    assert minted.record_id is None
    assert MintState.INDEXED not in minted.states
    assert minted.states[-1] == MintState.DONE
    assert ledger.write_count == 1
    assert verified.verified
    assert verified.proof.locator is None


def test_stale_index_entry_without_ledger_proof_is_not_verified(index):
    coordinator = ProofCoordinator(make_context(index=index))

    async def scenario():
        await index.upsert(IndexEntry(id="r1", digest=HELLO_DIGEST, locator="bafyhello", creator=CREATOR))
        return await coordinator.verify("bafyhello")

    result = asyncio.run(scenario())
    assert not result.verified
    assert result.proof is None


def test_ledger_proof_without_index_entry_is_verified(ledger):
    coordinator = ProofCoordinator(make_context(ledger=ledger))

    async def scenario():
        await ledger.write(HELLO_DIGEST, "loc", "dev")
        return await coordinator.verify(HELLO_DIGEST)

    result = asyncio.run(scenario())
    assert result.verified
    assert result.proof.locator is None


def test_index_outage_falls_back_to_ledger(ledger):
    coordinator = ProofCoordinator(make_context(ledger=ledger, index=BrokenIndex(fail_upsert=False, fail_get=True)))

    async def scenario():
        await ledger.write(HELLO_DIGEST, "loc", "dev")
        return await coordinator.verify(HELLO_DIGEST)

    assert asyncio.run(scenario()).verified


def test_unknown_locator_is_not_verified(coordinator):
    result = asyncio.run(coordinator.verify("bafy-never-uploaded"))
    assert not result.verified


def test_ledger_outage_during_verify_is_an_error_not_a_verdict():
    class DownLedger(InMemoryLedger):
        async def exists(self, digest):
            raise NetworkError("rpc down")

    coordinator = ProofCoordinator(make_context(ledger=DownLedger()))
    with pytest.raises(NetworkError):
        asyncio.run(coordinator.verify(HELLO_DIGEST))


def test_concurrent_mint_of_same_digest_fails_fast():
    async def scenario():
        store = GatedContentStore()
        ledger = InMemoryLedger()
        coordinator = ProofCoordinator(make_context(ledger=ledger, content_store=store))

        first = asyncio.create_task(coordinator.mint(HELLO, CREATOR))
        await store.entered.wait()
        with pytest.raises(MintError) as exc:
            await coordinator.mint(HELLO, CREATOR)
        store.gate.set()
        minted = await first
        return exc.value, minted, store, ledger

    error, minted, store, ledger = asyncio.run(scenario())
    assert isinstance(error.cause, RegistrationInProgressError)
    assert minted.digest == HELLO_DIGEST
    assert store.upload_count == 1
    assert ledger.write_count == 1


def test_concurrent_mints_of_different_digests_are_independent():
    async def scenario():
        coordinator = ProofCoordinator(make_context())
        return await asyncio.gather(coordinator.mint(b"one", CREATOR), coordinator.mint(b"two", CREATOR))

    first, second = asyncio.run(scenario())
    assert first.digest != second.digest


def test_cancel_before_ledger_write_leaves_ledger_untouched():
    async def scenario():
        store = GatedContentStore()
        ledger = InMemoryLedger()
        coordinator = ProofCoordinator(make_context(ledger=ledger, content_store=store))

        task = asyncio.create_task(coordinator.mint(HELLO, CREATOR))
        await store.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The digest is free again for a new attempt
        store.gate.set()
        minted = await coordinator.mint(HELLO, CREATOR)
        return ledger, minted

    ledger, minted = asyncio.run(scenario())
    assert ledger.write_count == 1
    assert minted.digest == HELLO_DIGEST


def test_cancel_during_ledger_write_still_records_the_write():
    async def scenario():
        ledger = GatedLedger()
        index = BrokenIndex(fail_upsert=False)
        coordinator = ProofCoordinator(make_context(ledger=ledger, index=index))

        task = asyncio.create_task(coordinator.mint(HELLO, CREATOR))
        await ledger.entered.wait()
        task.cancel()
        await asyncio.sleep(0)
        ledger.gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        return ledger, await index.get(HELLO_DIGEST)

    ledger, entry = asyncio.run(scenario())
    assert ledger.write_count == 1
    assert entry is not None
    assert entry.tx_hash is not None


def test_list_and_remove_media(coordinator):
    async def scenario():
        first = await coordinator.mint(b"one", CREATOR)
        second = await coordinator.mint(b"two", CREATOR)
        listed = await coordinator.list_media(CREATOR)
        removed = await coordinator.remove(first.record_id)
        after = await coordinator.list_media(CREATOR)
        verified = await coordinator.verify(first.digest)
        return first, second, listed, removed, after, verified

    first, second, listed, removed, after, verified = asyncio.run(scenario())
    assert {e.digest for e in listed} == {first.digest, second.digest}
    assert removed
    assert [e.digest for e in after] == [second.digest]
    # Removal only hides the index entry; the ledger still vouches for it
    assert verified.verified
    assert verified.proof.locator is None


def test_write_that_landed_before_a_lost_response_completes_the_mint(index, content_store):
    ledger = LostResponseLedger()
    coordinator = ProofCoordinator(make_context(ledger=ledger, content_store=content_store, index=index))

    minted = asyncio.run(coordinator.mint(HELLO, CREATOR, location_claim="loc1", device_claim="dev1"))

    assert ledger.write_attempts == 2
    assert ledger.write_count == 1
    assert content_store.upload_count == 1
    assert minted.tx_hash is None
    assert minted.block_number is None
    assert MintState.ANCHORED in minted.states
    assert MintState.INDEXED in minted.states

    entry = asyncio.run(index.get(HELLO_DIGEST))
    assert entry.locator == minted.locator
    assert entry.tx_hash is None

    verified = asyncio.run(coordinator.verify(minted.locator))
    assert verified.verified
    assert verified.proof.location_claim == "loc1"


class ForeignWriteLedger(InMemoryLedger):
    """Another mint's proof lands while this caller's first write fails."""

    def __init__(self):
        super().__init__()
        self.write_attempts = 0

    async def write(self, digest, location_claim, device_claim):
        self.write_attempts += 1
        if self.write_attempts == 1:
            await super().write(digest, "elsewhere", "other-device")
            raise NetworkError("connection reset by peer")
        return await super().write(digest, location_claim, device_claim)


def test_foreign_proof_found_after_lost_response_is_already_registered(index):
    ledger = ForeignWriteLedger()
    coordinator = ProofCoordinator(make_context(ledger=ledger, index=index))

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR, location_claim="loc1", device_claim="dev1"))

    assert exc.value.stage == MintStage.ANCHOR
    assert isinstance(exc.value.cause, AlreadyRegisteredError)
    assert ledger.write_attempts == 2
    assert asyncio.run(index.get(HELLO_DIGEST)) is None


def test_already_registered_without_earlier_failure_is_not_read_back():
    ledger = FlakyLedger(failures=1, error_factory=lambda: AlreadyRegisteredError("taken"))
    coordinator = ProofCoordinator(make_context(ledger=ledger))

    with pytest.raises(MintError) as exc:
        asyncio.run(coordinator.mint(HELLO, CREATOR))

    assert isinstance(exc.value.cause, AlreadyRegisteredError)
    assert ledger.write_attempts == 1
