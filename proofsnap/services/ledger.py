"""
Ledger clients for the ProofSnap registry contract.

The ledger is the authority for proofs: it accepts exactly one write per
digest and refuses any later one. Failures are classified here, where they
are raised, as transient (connectivity, timeouts) or terminal (duplicate
proof, insufficient funds, reverts).
"""

import asyncio
import hashlib
import time
import structlog
from typing import Any, Dict, Optional, Union

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from proofsnap import config
from proofsnap.core.errors import (
    AlreadyRegisteredError,
    AuthenticationError,
    InsufficientFundsError,
    LedgerError,
    NetworkError,
    ProofNotFoundError,
    ProofSnapError,
)
from proofsnap.core.storage import TRANSIENT_STATUS_CODES
from proofsnap.core.utils import digest_to_hex, parse_digest
from proofsnap.models.proof import LedgerReceipt, Proof

logger = structlog.get_logger()

__all__ = ["PROOFSNAP_ABI", "Ledger", "Web3Ledger", "InMemoryLedger", "classify_ledger_error", "create_ledger"]

DigestLike = Union[str, bytes]

# First Hardhat development account, used as caller identity of the local ledger
DEV_CALLER_IDENTITY = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

PROOFSNAP_ABI = [
    {
        "type": "function",
        "name": "registerMedia",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_contentHash", "type": "bytes32"},
            {"name": "_locationData", "type": "string"},
            {"name": "_deviceId", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getProof",
        "stateMutability": "view",
        "inputs": [{"name": "_contentHash", "type": "bytes32"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "contentHash", "type": "bytes32"},
                {"name": "timestamp", "type": "uint256"},
                {"name": "creator", "type": "address"},
                {"name": "locationData", "type": "string"},
                {"name": "deviceId", "type": "string"},
            ],
        }],
    },
    {
        "type": "function",
        "name": "proofExists",
        "stateMutability": "view",
        "inputs": [{"name": "_contentHash", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

DUPLICATE_PROOF_REASON = "proof already exists"
MISSING_PROOF_REASONS = ("proof does not exist", "proof not found")
INSUFFICIENT_FUNDS_REASON = "insufficient funds"


def classify_ledger_error(e: Exception, digest: str) -> ProofSnapError:
    """Map a web3/RPC failure onto the error taxonomy."""
    if isinstance(e, ProofSnapError):
        return e

    details = {"digest": digest}
    message = str(e)
    lowered = message.lower()

    if isinstance(e, ContractLogicError):
        if DUPLICATE_PROOF_REASON in lowered:
            return AlreadyRegisteredError("Proof already exists for this digest", details=details)
        if any(reason in lowered for reason in MISSING_PROOF_REASONS):
            return ProofNotFoundError("No proof registered for this digest", details=details)
        return LedgerError(f"Ledger rejected the call: {message}", details=details)

    if INSUFFICIENT_FUNDS_REASON in lowered:
        return InsufficientFundsError("Ledger account has insufficient funds to write", details=details)

    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                      ConnectionError, TimeoutError)):
        return NetworkError(f"Ledger RPC unreachable: {message}", status_code=503, details=details)

    if isinstance(e, requests.exceptions.HTTPError):
        status_code = getattr(e.response, "status_code", None)
        details["status_code"] = status_code
        if status_code in TRANSIENT_STATUS_CODES:
            return NetworkError(f"Ledger RPC unavailable (HTTP {status_code})", status_code=503, details=details)
        if status_code in (401, 403):
            return AuthenticationError(f"Ledger RPC rejected credentials (HTTP {status_code})", details=details)

    return LedgerError(f"Ledger call failed: {message}", details=details)


class Ledger:
    """Ledger contract: existence probe, single write per digest, read-back."""

    name = "base"
    caller_identity: str = ""

    async def exists(self, digest: DigestLike) -> bool:
        raise NotImplementedError

    async def write(self, digest: DigestLike, location_claim: str, device_claim: str) -> LedgerReceipt:
        raise NotImplementedError

    async def read(self, digest: DigestLike) -> Proof:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"backend": self.name, "available": True, "error": None}


class Web3Ledger(Ledger):
    """Client for the deployed registry contract over JSON-RPC."""

    name = "web3"

    def __init__(self, rpc_url: Optional[str] = None, contract_address: Optional[str] = None,
                 signer_key: Optional[str] = None, tx_timeout: Optional[float] = None,
                 w3: Optional[Web3] = None):
        self.rpc_url = rpc_url or config.LEDGER_RPC_URL
        # Retries belong to RetryPolicy; the provider's own retry layer is switched off
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": 30},
                                               exception_retry_configuration=None))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address or config.LEDGER_CONTRACT_ADDRESS),
            abi=PROOFSNAP_ABI,
        )
        self.tx_timeout = tx_timeout if tx_timeout is not None else config.LEDGER_TX_TIMEOUT

        signer_key = signer_key if signer_key is not None else config.LEDGER_SIGNER_KEY
        self._account = Account.from_key(signer_key) if signer_key else None
        self._caller_identity = self._account.address if self._account else None

        logger.info("Ledger client initialized",
                    rpc_url=self.rpc_url,
                    contract_address=self.contract.address,
                    local_signer=self._account is not None)

    @property
    def caller_identity(self) -> str:
        if self._caller_identity is None:
            # Unlocked node account, as on a local development chain
            self._caller_identity = self.w3.eth.accounts[0]
        return self._caller_identity

    async def exists(self, digest: DigestLike) -> bool:
        return await asyncio.to_thread(self._exists_sync, parse_digest(digest))

    async def write(self, digest: DigestLike, location_claim: str, device_claim: str) -> LedgerReceipt:
        return await asyncio.to_thread(self._write_sync, parse_digest(digest), location_claim, device_claim)

    async def read(self, digest: DigestLike) -> Proof:
        return await asyncio.to_thread(self._read_sync, parse_digest(digest))

    def _exists_sync(self, digest: bytes) -> bool:
        try:
            return bool(self.contract.functions.proofExists(digest).call())
        except Exception as e:
            raise classify_ledger_error(e, digest_to_hex(digest))

    def _write_sync(self, digest: bytes, location_claim: str, device_claim: str) -> LedgerReceipt:
        digest_hex = digest_to_hex(digest)
        logger.info("Registering media on ledger", digest=digest_hex)

        try:
            call = self.contract.functions.registerMedia(digest, location_claim, device_claim)
            if self._account is not None:
                tx = call.build_transaction({
                    "from": self._account.address,
                    "nonce": self.w3.eth.get_transaction_count(self._account.address, "pending"),
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = call.transact({"from": self.caller_identity})
        except Exception as e:
            error = classify_ledger_error(e, digest_hex)
            logger.error("Ledger write rejected", digest=digest_hex, error_code=error.code, error=str(e))
            raise error

        # From here the transaction is out; a timeout must not be retried blindly
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except TimeExhausted as e:
            raise LedgerError(
                "Ledger write submitted but not confirmed in time",
                status_code=504,
                details={"digest": digest_hex, "tx_hash": Web3.to_hex(tx_hash)},
            ) from e
        except Exception as e:
            raise classify_ledger_error(e, digest_hex)

        if receipt["status"] != 1:
            raise LedgerError("Ledger write reverted",
                              details={"digest": digest_hex, "tx_hash": Web3.to_hex(tx_hash)})

        result = LedgerReceipt(tx_hash=Web3.to_hex(receipt["transactionHash"]),
                               block_number=receipt["blockNumber"])
        logger.info("Ledger write confirmed", digest=digest_hex,
                    tx_hash=result.tx_hash, block_number=result.block_number)
        return result

    def _read_sync(self, digest: bytes) -> Proof:
        digest_hex = digest_to_hex(digest)
        try:
            content_hash, timestamp, creator, location_data, device_id = \
                self.contract.functions.getProof(digest).call()
        except Exception as e:
            raise classify_ledger_error(e, digest_hex)

        if timestamp == 0:
            raise ProofNotFoundError("No proof registered for this digest", details={"digest": digest_hex})

        return Proof(
            digest="0x" + bytes(content_hash).hex(),
            creator=creator,
            timestamp=timestamp,
            location_claim=location_data,
            device_claim=device_id,
        )

    def health_check(self) -> Dict[str, Any]:
        health = {"backend": self.name, "available": False, "error": None}
        try:
            health["available"] = self.w3.is_connected()
            if health["available"]:
                health["block_number"] = self.w3.eth.block_number
        except (Web3Exception, requests.exceptions.RequestException) as e:
            health["error"] = str(e)
        return health


class InMemoryLedger(Ledger):
    """Deterministic write-once-per-digest ledger for development and tests."""

    name = "memory"

    def __init__(self, caller_identity: str = DEV_CALLER_IDENTITY):
        self.caller_identity = caller_identity
        self.proofs: Dict[str, Proof] = {}
        self.block_number = 0
        self.write_count = 0

    async def exists(self, digest: DigestLike) -> bool:
        return digest_to_hex(parse_digest(digest)) in self.proofs

    async def write(self, digest: DigestLike, location_claim: str, device_claim: str) -> LedgerReceipt:
        digest_hex = digest_to_hex(parse_digest(digest))
        if digest_hex in self.proofs:
            raise AlreadyRegisteredError("Proof already exists for this digest", details={"digest": digest_hex})

        self.write_count += 1
        self.block_number += 1
        self.proofs[digest_hex] = Proof(
            digest=digest_hex,
            creator=self.caller_identity,
            timestamp=int(time.time()),
            location_claim=location_claim,
            device_claim=device_claim,
        )
        tx_hash = "0x" + hashlib.sha256(f"{digest_hex}:{self.block_number}".encode()).hexdigest()
        logger.info("Ledger write recorded", digest=digest_hex, block_number=self.block_number)
        return LedgerReceipt(tx_hash=tx_hash, block_number=self.block_number)

    async def read(self, digest: DigestLike) -> Proof:
        digest_hex = digest_to_hex(parse_digest(digest))
        proof = self.proofs.get(digest_hex)
        if proof is None:
            raise ProofNotFoundError("No proof registered for this digest", details={"digest": digest_hex})
        return proof


def create_ledger(backend: Optional[str] = None) -> Ledger:
    backend = backend or config.LEDGER_BACKEND
    if backend == "web3":
        return Web3Ledger()
    if backend == "memory":
        return InMemoryLedger()
    raise ValueError(f"Unknown ledger backend: {backend}")
