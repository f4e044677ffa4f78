"""
Pydantic models for proofs, ledger receipts and index entries.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Attribution(str, Enum):
    """How the creator of a proof is attributed."""
    SIGNED = "signed"              # creator signed the digest
    LEDGER_CALLER = "ledger_caller"  # creator is whoever sent the ledger write


class RecordStatus(str, Enum):
    VERIFIED = "VERIFIED"
    REMOVED = "REMOVED"


class Proof(BaseModel):
    """Immutable record anchored on the ledger."""
    model_config = ConfigDict(frozen=True)

    digest: str = Field(..., description="0x-prefixed SHA-256 of the raw content")
    creator: str = Field(..., description="Identity that performed the ledger write")
    timestamp: int = Field(..., ge=0, description="Ledger timestamp (unix seconds)")
    location_claim: str = Field(..., description="Location claim recorded at mint time")
    device_claim: str = Field(..., description="Device claim recorded at mint time")


class LedgerReceipt(BaseModel):
    """Result of a successful ledger write."""
    model_config = ConfigDict(frozen=True)

    tx_hash: Optional[str] = Field(..., description="Transaction reference, None when the write response was lost")
    block_number: Optional[int] = Field(..., ge=0, description="Block the write landed in")


class IndexEntry(BaseModel):
    """Off-chain mirror of a proof plus its content locator."""
    id: str = Field(..., description="Local record id")
    digest: str = Field(..., description="0x-prefixed content digest")
    locator: str = Field(..., description="Content store locator")
    creator: str = Field(..., description="Creator identity as supplied at mint")
    tx_hash: Optional[str] = Field(None, description="Ledger transaction reference")
    block_number: Optional[int] = Field(None, description="Ledger block number")
    location_claim: Optional[str] = None
    device_claim: Optional[str] = None
    signature: Optional[str] = Field(None, description="Creator signature over the digest, if supplied")
    status: RecordStatus = Field(default=RecordStatus.VERIFIED)
    created_at: datetime = Field(default_factory=_utcnow)
    removed_at: Optional[datetime] = None

    @property
    def removed(self) -> bool:
        return self.removed_at is not None


class MintState(str, Enum):
    """States of the mint flow."""
    RECEIVED = "received"
    HASHED = "hashed"
    SIGNATURE_CHECKED = "signature_checked"
    STORED = "stored"
    ANCHORED = "anchored"
    INDEXED = "indexed"
    DONE = "done"
    FAILED = "failed"


class MintResult(BaseModel):
    """Outcome of a completed mint."""
    digest: str
    locator: str
    content_url: str
    tx_hash: Optional[str]
    block_number: Optional[int]
    creator: str
    signed: bool = Field(default=False, description="Creator signature over the digest was verified")
    index_degraded: bool = Field(default=False, description="Anchored, but the index write failed")
    record_id: Optional[str] = None
    states: List[MintState] = Field(default_factory=list)


class VerifiedProof(BaseModel):
    """Ledger proof reconciled with the index-only fields."""
    digest: str
    creator: str = Field(..., description="Identity recorded by the ledger")
    timestamp: int
    location_claim: str
    device_claim: str
    attribution: Attribution
    signer: Optional[str] = Field(None, description="Identity recovered from the creator signature")
    locator: Optional[str] = None
    content_url: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    record_id: Optional[str] = None
    indexed_at: Optional[datetime] = None


class VerificationResult(BaseModel):
    verified: bool
    proof: Optional[VerifiedProof] = None
    ledger_proof: Optional[Proof] = None
    message: str = ""
