"""
Proof coordinator: end-to-end mint and verify flows.

Mint: hash -> optional signature check -> content upload -> ledger write ->
index write. Verify: index lookup -> ledger existence check -> ledger read ->
reconcile. A verified result is only ever produced after the ledger has
confirmed the digest.
"""

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from typing import List, Optional, Set

from proofsnap import config
from proofsnap.core.errors import (
    AlreadyRegisteredError,
    AuthenticationError,
    MintError,
    MintStage,
    ProofNotFoundError,
    ProofSnapError,
    RegistrationInProgressError,
    ValidationError,
)
from proofsnap.core.index import InMemoryIndex, OffChainIndex, normalize_key
from proofsnap.core.retry import RetryPolicy, default_policy, with_retry
from proofsnap.core.storage import ContentStore, create_content_store
from proofsnap.core.utils import digest_to_hex, hash_content, looks_like_digest, new_record_id
from proofsnap.services.identity import recover_identity, validate_identity, verify_signature
from proofsnap.services.ledger import Ledger, create_ledger
from proofsnap.models.proof import (
    Attribution,
    IndexEntry,
    LedgerReceipt,
    MintResult,
    MintState,
    Proof,
    VerificationResult,
    VerifiedProof,
)

logger = structlog.get_logger()

__all__ = ["ProofContext", "build_context", "ProofCoordinator"]


@dataclass
class ProofContext:
    """Explicitly constructed collaborators of the coordinator."""
    ledger: Ledger
    content_store: ContentStore
    index: OffChainIndex
    retry_policy: RetryPolicy = field(default_factory=default_policy)


def build_context() -> ProofContext:
    """Assemble the context from configuration."""
    if config.INDEX_BACKEND == "postgres":
        from proofsnap.core.database import PostgresIndex
        index = PostgresIndex()
    elif config.INDEX_BACKEND == "memory":
        index = InMemoryIndex()
    else:
        raise ValueError(f"Unknown index backend: {config.INDEX_BACKEND}")

    return ProofContext(
        ledger=create_ledger(),
        content_store=create_content_store(),
        index=index,
    )


class ProofCoordinator:
    """Runs mint and verify requests against a ``ProofContext``."""

    def __init__(self, context: ProofContext):
        self.context = context
        # Digests with a mint between the pre-flight check and the ledger write
        self._in_flight: Set[str] = set()

    async def mint(
        self,
        content: bytes,
        identity: str,
        signature: Optional[str] = None,
        location_claim: Optional[str] = None,
        device_claim: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> MintResult:
        identity = validate_identity(identity)
        if len(content) > config.MAX_CONTENT_SIZE:
            raise MintError(MintStage.HASH, ValidationError(
                f"Content exceeds maximum size of {config.MAX_CONTENT_SIZE} bytes",
                details={"content_size": len(content)}))
        location_claim = location_claim or config.DEFAULT_LOCATION_CLAIM
        device_claim = device_claim or config.DEFAULT_DEVICE_CLAIM

        states = [MintState.RECEIVED]

        digest = digest_to_hex(hash_content(content))
        states.append(MintState.HASHED)
        log = logger.bind(digest=digest, identity=identity)
        log.info("Mint started", content_size=len(content), signed=signature is not None)

        if signature is not None:
            if not verify_signature(signature, identity, digest):
                log.warning("Mint rejected: invalid signature")
                raise MintError(MintStage.SIGN, AuthenticationError(
                    "Signature does not match the claimed identity", details={"digest": digest}))
            states.append(MintState.SIGNATURE_CHECKED)

        if digest in self._in_flight:
            log.warning("Mint rejected: registration in progress")
            raise MintError(MintStage.ANCHOR, RegistrationInProgressError(
                "A registration for this digest is already in progress", details={"digest": digest}))

        self._in_flight.add(digest)
        try:
            await self._ensure_unregistered(digest)

            locator = await self._store(content, filename or f"image-{int(time.time() * 1000)}.jpg", digest)
            states.append(MintState.STORED)
            log.info("Content stored", locator=locator)

            entry = IndexEntry(
                id=new_record_id(),
                digest=digest,
                locator=locator,
                creator=identity,
                location_claim=location_claim,
                device_claim=device_claim,
                signature=signature,
            )
            receipt = await self._anchor(entry)
            states.append(MintState.ANCHORED)
            log.info("Proof anchored", tx_hash=receipt.tx_hash, block_number=receipt.block_number)
        finally:
            self._in_flight.discard(digest)

        entry = entry.model_copy(update={"tx_hash": receipt.tx_hash, "block_number": receipt.block_number})
        stored_entry = await self._index(entry)
        if stored_entry is not None:
            states.append(MintState.INDEXED)
        states.append(MintState.DONE)

        log.info("Mint completed", index_degraded=stored_entry is None)
        return MintResult(
            digest=digest,
            locator=locator,
            content_url=self.context.content_store.url_for(locator),
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            creator=identity,
            signed=signature is not None,
            index_degraded=stored_entry is None,
            record_id=stored_entry.id if stored_entry else None,
            states=states,
        )

    async def _ensure_unregistered(self, digest: str) -> None:
        """Short-circuit re-submissions before any content is uploaded."""
        try:
            exists = await with_retry(lambda: self.context.ledger.exists(digest),
                                      self.context.retry_policy, name="ledger.exists")
        except ProofSnapError as e:
            raise MintError(MintStage.ANCHOR, e)
        if exists:
            logger.info("Mint rejected: already registered", digest=digest)
            raise MintError(MintStage.ANCHOR, AlreadyRegisteredError(
                "Proof already exists for this digest", details={"digest": digest}))

    async def _store(self, content: bytes, filename: str, digest: str) -> str:
        try:
            return await with_retry(lambda: self.context.content_store.upload(content, filename),
                                    self.context.retry_policy, name="content.upload")
        except ProofSnapError as e:
            logger.error("Content upload failed", digest=digest, error=str(e))
            raise MintError(MintStage.STORE, e)

    async def _anchor(self, entry: IndexEntry) -> LedgerReceipt:
        ledger = self.context.ledger
        transient_failures = 0

        async def attempt() -> LedgerReceipt:
            nonlocal transient_failures
            task = asyncio.ensure_future(ledger.write(entry.digest, entry.location_claim, entry.device_claim))
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                await self._settle_abandoned_write(task, entry)
                raise
            except ProofSnapError as e:
                if e.transient:
                    transient_failures += 1
                raise

        try:
            return await with_retry(attempt, self.context.retry_policy, name="ledger.write")
        except AlreadyRegisteredError as e:
            # A retry after a lost response can collide with our own earlier write
            if transient_failures:
                receipt = await self._recover_landed_write(entry)
                if receipt is not None:
                    return receipt
            logger.error("Ledger write failed", digest=entry.digest, error_code=e.code, error=str(e))
            raise MintError(MintStage.ANCHOR, e)
        except ProofSnapError as e:
            logger.error("Ledger write failed", digest=entry.digest, error_code=e.code, error=str(e))
            raise MintError(MintStage.ANCHOR, e)

    async def _recover_landed_write(self, entry: IndexEntry) -> Optional[LedgerReceipt]:
        """
        Read back a proof that a retried write found already registered.

        The proof counts as ours when the ledger caller and both claims match
        what this mint sent. The transaction reference is unknown in that case.
        """
        ledger = self.context.ledger
        try:
            proof = await with_retry(lambda: ledger.read(entry.digest),
                                     self.context.retry_policy, name="ledger.read")
            caller = await asyncio.to_thread(lambda: ledger.caller_identity)
        except ProofSnapError as e:
            logger.warning("Could not read back ledger proof after lost write response",
                           digest=entry.digest, error=str(e))
            return None

        if (proof.creator.lower() != caller.lower()
                or proof.location_claim != entry.location_claim
                or proof.device_claim != entry.device_claim):
            return None

        logger.warning("Ledger write landed before its response was lost",
                       digest=entry.digest, creator=proof.creator)
        return LedgerReceipt(tx_hash=None, block_number=None)

    async def _settle_abandoned_write(self, task: "asyncio.Future[LedgerReceipt]", entry: IndexEntry) -> None:
        """Let a started ledger write finish so its outcome is recorded, not lost."""
        try:
            receipt = await task
        except ProofSnapError as e:
            logger.warning("Abandoned mint: ledger write did not complete",
                           digest=entry.digest, error=str(e))
            return

        logger.warning("Abandoned mint: ledger write completed",
                       digest=entry.digest, tx_hash=receipt.tx_hash, block_number=receipt.block_number)
        await self._index(entry.model_copy(update={"tx_hash": receipt.tx_hash,
                                                   "block_number": receipt.block_number}))

    async def _index(self, entry: IndexEntry) -> Optional[IndexEntry]:
        """Best-effort index write. None means the index is degraded."""
        try:
            return await with_retry(lambda: self.context.index.upsert(entry),
                                    self.context.retry_policy, name="index.upsert")
        except ProofSnapError as e:
            logger.warning("Index write failed after anchoring", digest=entry.digest,
                           stage=MintStage.INDEX.value, error=str(e))
            return None

    async def verify(self, key: str) -> VerificationResult:
        if not key or not key.strip():
            raise ValidationError("Lookup key is required")
        key = normalize_key(key)
        log = logger.bind(key=key)

        entry = None
        try:
            entry = await self.context.index.get(key)
        except ProofSnapError as e:
            # The index is advisory; fall back to the ledger
            log.warning("Index lookup failed", error=str(e))

        if entry is not None:
            digest = entry.digest
        elif looks_like_digest(key):
            digest = key
        else:
            log.info("Verification failed: unknown key")
            return VerificationResult(verified=False, message="No proof exists for this key")

        exists = await with_retry(lambda: self.context.ledger.exists(digest),
                                  self.context.retry_policy, name="ledger.exists")
        if not exists:
            log.info("Verification failed: not on ledger", digest=digest, indexed=entry is not None)
            return VerificationResult(verified=False, message="No proof exists on the ledger for this digest")

        try:
            ledger_proof = await with_retry(lambda: self.context.ledger.read(digest),
                                            self.context.retry_policy, name="ledger.read")
        except ProofNotFoundError:
            log.warning("Ledger reported existence but read found nothing", digest=digest)
            return VerificationResult(verified=False, message="No proof exists on the ledger for this digest")

        proof = self._reconcile(ledger_proof, entry)
        log.info("Verification succeeded", digest=digest, attribution=proof.attribution.value)
        return VerificationResult(verified=True, proof=proof, ledger_proof=ledger_proof,
                                  message="Proof found on the ledger")

    def _reconcile(self, ledger_proof: Proof, entry: Optional[IndexEntry]) -> VerifiedProof:
        """Ledger fields win; locator and other index-only fields come from the index."""
        attribution = Attribution.LEDGER_CALLER
        signer = None
        if entry is not None and entry.signature:
            try:
                signer = recover_identity(entry.signature, ledger_proof.digest)
                attribution = Attribution.SIGNED
            except AuthenticationError as e:
                logger.warning("Stored signature no longer recovers", digest=ledger_proof.digest, error=str(e))

        proof = VerifiedProof(
            digest=ledger_proof.digest,
            creator=ledger_proof.creator,
            timestamp=ledger_proof.timestamp,
            location_claim=ledger_proof.location_claim,
            device_claim=ledger_proof.device_claim,
            attribution=attribution,
            signer=signer,
        )
        if entry is None:
            return proof

        return proof.model_copy(update={
            "locator": entry.locator,
            "content_url": self.context.content_store.url_for(entry.locator),
            "tx_hash": entry.tx_hash,
            "block_number": entry.block_number,
            "record_id": entry.id,
            "indexed_at": entry.created_at,
        })

    async def list_media(self, identity: str, limit: int = 50) -> List[IndexEntry]:
        identity = validate_identity(identity)
        return await self.context.index.list_for_creator(identity, limit)

    async def remove(self, record_id: str) -> bool:
        """Soft-remove an index entry. The ledger record is untouched."""
        return await self.context.index.remove(record_id)
