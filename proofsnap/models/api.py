"""
Pydantic models for the HTTP request and response bodies.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .proof import Attribution, IndexEntry, Proof, VerifiedProof


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MintRequest(CamelModel):
    """Mint request as sent by the capture app."""
    content_bytes: str = Field(..., alias="contentBytes", description="Base64-encoded media bytes")
    identity: str = Field(..., description="Creator address")
    signature: Optional[str] = Field(None, description="EIP-191 signature over the content digest")
    location_claim: Optional[str] = Field(None, alias="locationClaim")
    device_claim: Optional[str] = Field(None, alias="deviceClaim")
    filename: Optional[str] = Field(None, description="Name to store the content under")

    @field_validator("content_bytes")
    @classmethod
    def content_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("contentBytes must not be empty")
        return v


class MintResponse(CamelModel):
    status: str = Field(default="success")
    digest: str = Field(..., description="0x-prefixed SHA-256 of the raw content")
    locator: str = Field(..., description="Content store locator")
    content_url: str = Field(..., alias="contentUrl")
    tx_ref: Optional[str] = Field(None, alias="txRef", description="Ledger transaction reference")
    block_number: Optional[int] = Field(None, alias="blockNumber")
    verification_key: str = Field(..., alias="verificationKey", description="Key to pass to verify")
    verification_url: str = Field(..., alias="verificationUrl")
    signed: bool = Field(..., description="Whether a creator signature was verified")
    index_degraded: bool = Field(..., alias="indexDegraded")


class VerifyResponse(CamelModel):
    verified: bool
    attribution: Optional[Attribution] = Field(
        None, description="'signed' when a creator signature backs the proof, else 'ledger_caller'")
    proof: Optional[VerifiedProof] = None
    ledger_proof: Optional[Proof] = Field(None, alias="ledgerProof")
    message: str = ""


class MediaListResponse(CamelModel):
    identity: str
    items: List[IndexEntry] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error code")
    kind: Optional[str] = Field(None, description="Error kind")
    message: str = Field(..., description="Error message")
    stage: Optional[str] = Field(None, description="Mint stage that failed")
    retryable: bool = Field(default=False, description="Whether resubmitting may succeed")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    timestamp: datetime
    components: Dict[str, Any] = Field(..., description="Component health status")
