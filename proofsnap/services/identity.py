"""
Identity binding for content digests.

Identities are Ethereum-style addresses. A creator signs the 32 raw digest
bytes with EIP-191 ``personal_sign`` (the ``\\x19Ethereum Signed Message``
prefix keeps these signatures apart from transaction or typed-data
signatures). Verification recovers the signer's address and compares it to
the claimed identity, ignoring checksum case.
"""

import re
import structlog
from typing import Tuple, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from proofsnap.core.errors import AuthenticationError, ValidationError
from proofsnap.core.utils import parse_digest

logger = structlog.get_logger()

__all__ = [
    "validate_identity",
    "identity_of",
    "generate_identity",
    "sign_digest",
    "recover_identity",
    "verify_signature",
]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_SIGNATURE_RE = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")


def validate_identity(identity: str) -> str:
    """Return the identity unchanged if it is a well-formed address."""
    if not isinstance(identity, str) or not _ADDRESS_RE.match(identity.strip()):
        raise ValidationError("Identity must be a 0x-prefixed 20-byte hex address",
                              details={"identity": identity})
    return identity.strip()


def identity_of(private_key: Union[str, bytes]) -> str:
    return Account.from_key(private_key).address


def generate_identity() -> Tuple[str, str]:
    """Create a fresh keypair, returned as (address, 0x-hex private key)."""
    account = Account.create()
    return account.address, "0x" + bytes(account.key).hex()


def sign_digest(digest: Union[str, bytes], private_key: Union[str, bytes]) -> str:
    """Sign the digest value itself (not a text rendering of it)."""
    message = encode_defunct(primitive=parse_digest(digest))
    signed = Account.sign_message(message, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_identity(signature: str, digest: Union[str, bytes]) -> str:
    """Recover the address that produced ``signature`` over ``digest``."""
    if not isinstance(signature, str) or not _SIGNATURE_RE.match(signature):
        raise AuthenticationError("Signature must be 65 bytes of hex")

    message = encode_defunct(primitive=parse_digest(digest))
    try:
        return Account.recover_message(message, signature=signature)
    except Exception as e:
        raise AuthenticationError(f"Signature could not be recovered: {e}")


def verify_signature(signature: str, claimed_identity: str, digest: Union[str, bytes]) -> bool:
    """True only when the recovered signer is exactly the claimed identity."""
    claimed_identity = validate_identity(claimed_identity)
    try:
        recovered = recover_identity(signature, digest)
    except AuthenticationError as e:
        logger.warning("Signature recovery failed", error=str(e))
        return False

    matches = recovered.lower() == claimed_identity.lower()
    if not matches:
        logger.warning("Signature identity mismatch",
                       claimed_identity=claimed_identity, recovered_identity=recovered)
    return matches
