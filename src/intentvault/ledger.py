"""
Ledger collaborator interface.

The engine never moves value itself. Once an intent is committed it asks a
ledger to transfer tokens from the vault to the merchant. Every transfer
carries the intent hash as its reference; a ledger applies a given reference
at most once, so re-sending a transfer whose outcome is unknown is safe.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .intent import normalize_address

logger = logging.getLogger(__name__)

# Raised after the request may already have reached the ledger.
_AMBIGUOUS_ERRORS = (httpx.ReadTimeout, httpx.WriteTimeout, httpx.RemoteProtocolError)


@dataclass
class TransferResult:
    success: bool
    transfer_id: Optional[str] = None
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> dict:
        return {"success": self.success, "transfer_id": self.transfer_id, "error": self.error}


class LedgerClient(Protocol):
    def transfer(
        self, source: str, destination: str, token: str, amount: int, reference: Optional[str] = None
    ) -> TransferResult: ...

    def balance_of(self, account: str, token: str) -> int: ...


class InMemoryLedger:
    """Process-local ledger for development, demos and tests.

    ``fail_next`` makes the next N transfers fail without moving anything.
    A reference that already succeeded returns its original result.
    """

    def __init__(self, balances: Optional[dict[tuple[str, str], int]] = None):
        self._lock = threading.Lock()
        self._balances: dict[tuple[str, str], int] = {}
        self.transfers: list[dict] = []
        self.fail_next = 0
        self._applied: dict[str, TransferResult] = {}
        for (account, token), amount in (balances or {}).items():
            self._balances[(normalize_address(account), normalize_address(token))] = int(amount)

    def mint(self, account: str, token: str, amount: int) -> None:
        key = (normalize_address(account), normalize_address(token))
        with self._lock:
            self._balances[key] = self._balances.get(key, 0) + int(amount)

    def balance_of(self, account: str, token: str) -> int:
        key = (normalize_address(account), normalize_address(token))
        with self._lock:
            return self._balances.get(key, 0)

    def transfer(
        self, source: str, destination: str, token: str, amount: int, reference: Optional[str] = None
    ) -> TransferResult:
        src = (normalize_address(source), normalize_address(token))
        dst = (normalize_address(destination), normalize_address(token))
        with self._lock:
            if reference is not None and reference in self._applied:
                return self._applied[reference]
            if self.fail_next > 0:
                self.fail_next -= 1
                return TransferResult(success=False, error="Simulated ledger failure")
            if self._balances.get(src, 0) < amount:
                return TransferResult(
                    success=False,
                    error=f"Insufficient balance: {self._balances.get(src, 0)} < {amount}",
                )
            self._balances[src] = self._balances.get(src, 0) - amount
            self._balances[dst] = self._balances.get(dst, 0) + amount
            transfer_id = "0x" + hashlib.sha256(
                f"{src}:{dst}:{amount}:{len(self.transfers)}:{time.time()}".encode()
            ).hexdigest()
            self.transfers.append(
                {
                    "transfer_id": transfer_id,
                    "source": src[0],
                    "destination": dst[0],
                    "token": src[1],
                    "amount": amount,
                    "reference": reference,
                }
            )
            result = TransferResult(success=True, transfer_id=transfer_id)
            if reference is not None:
                self._applied[reference] = result
        return result


class HttpLedgerClient:
    """JSON-over-HTTP client for a remote ledger service.

    POST {base_url}/transfer  {"from", "to", "token", "amount", "reference"} -> {"transfer_id"}
         (header Idempotency-Key: reference)
    GET  {base_url}/balance?account=..&token=..                -> {"balance"}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpLedgerClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def transfer(
        self, source: str, destination: str, token: str, amount: int, reference: Optional[str] = None
    ) -> TransferResult:
        payload = {
            "from": normalize_address(source),
            "to": normalize_address(destination),
            "token": normalize_address(token),
            "amount": str(int(amount)),
        }
        headers = {}
        if reference is not None:
            payload["reference"] = reference
            headers["Idempotency-Key"] = reference

        attempts = 2 if reference is not None else 1
        for attempt in range(1, attempts + 1):
            try:
                response = self._http.post("/transfer", json=payload, headers=headers)
                break
            except _AMBIGUOUS_ERRORS as e:
                # The ledger may have applied the request; only a keyed request can be re-sent.
                if attempt < attempts:
                    logger.warning("Transfer outcome unknown (%s), re-sending with key %s", e, reference)
                    continue
                return TransferResult(success=False, error=f"Transfer outcome unknown: {e}")
            except httpx.TimeoutException as e:
                return TransferResult(success=False, error=f"Request timeout: {e}")
            except httpx.HTTPError as e:
                return TransferResult(success=False, error=f"Ledger request failed: {e}")

        if response.status_code != 200:
            logger.warning("Ledger rejected transfer (%d): %s", response.status_code, response.text[:200])
            return TransferResult(
                success=False,
                error=f"Ledger returned {response.status_code}: {response.text[:200]}",
            )
        try:
            body = response.json()
        except ValueError:
            return TransferResult(success=False, error="Ledger returned a non-JSON response")
        if body.get("success") is False:
            return TransferResult(success=False, error=str(body.get("error") or "Ledger reported failure"))
        return TransferResult(success=True, transfer_id=body.get("transfer_id"))

    def balance_of(self, account: str, token: str) -> int:
        response = self._http.get(
            "/balance",
            params={"account": normalize_address(account), "token": normalize_address(token)},
        )
        response.raise_for_status()
        return int(response.json()["balance"])
