"""
Spend intents and their deployment-bound identifiers.

An Intent is a proposed, time-bounded payment from an account to a merchant.
Its identifier is the EIP-712 digest of every intent field under a domain
unique to the vault deployment, so the same bytes serve as the owner's
signing payload and as the replay key.
"""

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_INTENT_TTL_SECONDS = 3600

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

INTENT_TYPES = {
    "Intent": [
        {"name": "user", "type": "address"},
        {"name": "merchant", "type": "address"},
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "cartHash", "type": "bytes32"},
        {"name": "nonce", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class IntentDomain:
    """EIP-712 domain separating one vault deployment from every other."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_eip712(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": int(self.chain_id),
            "verifyingContract": normalize_address(self.verifying_contract),
        }


@dataclass(frozen=True)
class Intent:
    """A proposed spend. Values, not entities: only consumption is stored."""

    account: str
    merchant: str
    token: str
    amount: int
    deadline: int
    cart_hash: str
    nonce: int

    def normalized(self) -> "Intent":
        """Return a copy with canonical addresses and cart hash.

        Raises ValueError for anything that cannot be hashed.
        """
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError("amount must be an integer base-unit value")
        if isinstance(self.nonce, bool) or not isinstance(self.nonce, int) or self.nonce < 0:
            raise ValueError("nonce must be a non-negative integer")
        if int(self.deadline) < 0:
            raise ValueError("deadline must be >= 0")
        return replace(
            self,
            account=normalize_address(self.account),
            merchant=normalize_address(self.merchant),
            token=normalize_address(self.token),
            deadline=int(self.deadline),
            cart_hash=normalize_hex32(self.cart_hash, "cart_hash"),
        )

    def to_eip712_message(self) -> dict[str, Any]:
        return {
            "user": self.account,
            "merchant": self.merchant,
            "token": self.token,
            "amount": self.amount,
            "deadline": self.deadline,
            "cartHash": self.cart_hash,
            "nonce": self.nonce,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Intent":
        return cls(
            account=str(payload["account"]),
            merchant=str(payload["merchant"]),
            token=str(payload["token"]),
            amount=int(payload["amount"]),
            deadline=int(payload["deadline"]),
            cart_hash=str(payload["cart_hash"]),
            nonce=int(payload["nonce"]),
        ).normalized()


def build_intent(
    *,
    account: str,
    merchant: str,
    token: str,
    amount: int,
    nonce: int,
    cart_reference: Optional[str] = None,
    cart_hash: Optional[str] = None,
    deadline: Optional[int] = None,
    ttl_seconds: int = DEFAULT_INTENT_TTL_SECONDS,
    now: Optional[int] = None,
) -> Intent:
    """Construct a normalized intent.

    The cart hash is taken as given, or derived as keccak256 of
    ``cart_reference`` (defaulting to a timestamped ``cart-<ms>`` label).
    """
    issued = int(time.time()) if now is None else int(now)
    if cart_hash is None:
        reference = cart_reference if cart_reference is not None else f"cart-{int(time.time() * 1000)}"
        cart_hash = "0x" + keccak(text=reference).hex()
    return Intent(
        account=account,
        merchant=merchant,
        token=token,
        amount=int(amount),
        deadline=int(deadline) if deadline is not None else issued + ttl_seconds,
        cart_hash=cart_hash,
        nonce=int(nonce),
    ).normalized()


def intent_typed_data(intent: Intent, domain: IntentDomain) -> dict[str, Any]:
    canonical = intent.normalized()
    return {
        "domain": domain.to_eip712(),
        "types": INTENT_TYPES,
        "primaryType": "Intent",
        "message": canonical.to_eip712_message(),
    }


def hash_intent(intent: Intent, domain: IntentDomain) -> str:
    """Compute the EIP-712 digest identifying ``intent`` in ``domain``."""
    typed_data = intent_typed_data(intent, domain)
    signable = encode_typed_data(
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
    return "0x" + digest.hex()


def sign_intent(private_key: str, intent: Intent, domain: IntentDomain) -> str:
    """Sign an intent as its account owner; returns a 0x-prefixed 65-byte hex signature."""
    typed_data = intent_typed_data(intent, domain)
    signed = Account.sign_typed_data(
        private_key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return "0x" + bytes(signed.signature).hex()


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def normalize_hex32(value: Any, field_name: str) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a hex string")
    candidate = value.strip().lower()
    hex_part = candidate[2:] if candidate.startswith("0x") else candidate
    if len(hex_part) != 64 or any(ch not in "0123456789abcdef" for ch in hex_part):
        raise ValueError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return "0x" + hex_part
