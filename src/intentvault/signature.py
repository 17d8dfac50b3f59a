"""Recoverable-signature checks over intent hashes."""

from __future__ import annotations

import logging
from typing import Optional, Union

from eth_account import Account

from .intent import normalize_address, normalize_hex32

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 65

SignatureInput = Union[str, bytes, bytearray, None]


def signature_bytes(signature: SignatureInput) -> Optional[bytes]:
    """Decode a signature to raw bytes; None when it is not valid hex."""
    if signature is None:
        return b""
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    if not isinstance(signature, str):
        return None
    candidate = signature.strip()
    if candidate[:2].lower() == "0x":
        candidate = candidate[2:]
    try:
        return bytes.fromhex(candidate)
    except ValueError:
        return None


def is_signature_present(signature: SignatureInput) -> bool:
    """True for anything but an absent or empty (``""`` / ``"0x"``) signature.

    Undecodable input counts as present so it is rejected rather than ignored.
    """
    raw = signature_bytes(signature)
    return raw is None or len(raw) > 0


def recover_signer(intent_hash: str, signature: SignatureInput) -> Optional[str]:
    """Recover the signing address, or None if the signature cannot be used."""
    raw = signature_bytes(signature)
    if raw is None or len(raw) != SIGNATURE_LENGTH:
        return None
    try:
        digest = bytes.fromhex(normalize_hex32(intent_hash, "intent_hash")[2:])
        recovered = Account._recover_hash(digest, signature=raw)
    except Exception as e:
        logger.debug("Signature recovery failed: %s", e)
        return None
    return normalize_address(recovered)


def verify_signature(intent_hash: str, signature: SignatureInput, claimed_signer: str) -> bool:
    """Return True only if ``signature`` over ``intent_hash`` recovers to ``claimed_signer``."""
    recovered = recover_signer(intent_hash, signature)
    if recovered is None:
        return False
    try:
        return recovered == normalize_address(claimed_signer)
    except ValueError:
        return False
