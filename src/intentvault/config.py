"""
Deployment configuration.

Values come from environment variables so the same engine can be pointed at
different vault deployments without code changes. The EIP-712 domain fields
are what make intent hashes unique to one deployment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .intent import IntentDomain
from .money import USDC_DECIMALS


DEFAULT_HOME = Path.home() / ".intentvault"
DEFAULT_VAULT_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_CHAIN_ID = 84532
DEFAULT_DOMAIN_NAME = "GroceryVault"
DEFAULT_DOMAIN_VERSION = "1"

HOME_ENV = "INTENTVAULT_HOME"
VAULT_ADDRESS_ENV = "INTENTVAULT_VAULT_ADDRESS"
CHAIN_ID_ENV = "INTENTVAULT_CHAIN_ID"
DOMAIN_NAME_ENV = "INTENTVAULT_DOMAIN_NAME"
DOMAIN_VERSION_ENV = "INTENTVAULT_DOMAIN_VERSION"
TOKEN_ADDRESS_ENV = "INTENTVAULT_TOKEN_ADDRESS"
TOKEN_DECIMALS_ENV = "INTENTVAULT_TOKEN_DECIMALS"
LEDGER_URL_ENV = "INTENTVAULT_LEDGER_URL"


@dataclass
class VaultConfig:
    """Where state lives and which deployment intents are bound to."""

    home: Path = field(default_factory=lambda: DEFAULT_HOME)
    vault_address: str = DEFAULT_VAULT_ADDRESS
    chain_id: int = DEFAULT_CHAIN_ID
    domain_name: str = DEFAULT_DOMAIN_NAME
    domain_version: str = DEFAULT_DOMAIN_VERSION
    token_address: Optional[str] = None
    token_decimals: int = USDC_DECIMALS
    ledger_url: Optional[str] = None

    @property
    def db_path(self) -> Path:
        return self.home / "vault.sqlite3"

    @property
    def lock_dir(self) -> Path:
        return self.home / "locks"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / ".intentvault-secrets" / "audit_hmac.key"

    def domain(self) -> IntentDomain:
        return IntentDomain(
            name=self.domain_name,
            version=self.domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.vault_address,
        )

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None) -> "VaultConfig":
        source = os.environ if env is None else env
        home = source.get(HOME_ENV)
        chain_id = source.get(CHAIN_ID_ENV)
        decimals = source.get(TOKEN_DECIMALS_ENV)
        try:
            return cls(
                home=Path(home).expanduser() if home else DEFAULT_HOME,
                vault_address=source.get(VAULT_ADDRESS_ENV) or DEFAULT_VAULT_ADDRESS,
                chain_id=int(chain_id) if chain_id else DEFAULT_CHAIN_ID,
                domain_name=source.get(DOMAIN_NAME_ENV) or DEFAULT_DOMAIN_NAME,
                domain_version=source.get(DOMAIN_VERSION_ENV) or DEFAULT_DOMAIN_VERSION,
                token_address=source.get(TOKEN_ADDRESS_ENV) or None,
                token_decimals=int(decimals) if decimals else USDC_DECIMALS,
                ledger_url=source.get(LEDGER_URL_ENV) or None,
            )
        except ValueError as e:
            raise ValueError(f"Invalid intentvault configuration: {e}") from e


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)
