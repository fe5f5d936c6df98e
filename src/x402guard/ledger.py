"""Ledger port abstractions and local stand-ins.

The engine never moves value itself. It calls a ``LedgerPort`` after a
payment is authorized and treats the call as part of the same unit of work.
``InMemoryLedger`` and ``LocalLedger`` behave like a minimal stablecoin
(balances per holder plus a mint faucet) and are suitable for local
development and tests.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Protocol

from eth_utils import keccak

from .storage import atomic_write_json, ensure_private_dir, exclusive_lock

logger = logging.getLogger(__name__)


DEFAULT_LEDGER_STATE_PATH = Path.home() / ".x402guard" / "ledger.json"


@dataclass
class TransferResult:
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    insufficient_balance: bool = False


class LedgerPort(Protocol):
    def balance_of(self, account_id: str) -> int: ...

    def transfer_in(self, account_id: str, source: str, amount: int) -> TransferResult: ...

    def transfer_out(self, account_id: str, to: str, amount: int) -> TransferResult: ...


class InMemoryLedger:
    """Thread-safe holder -> balance map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state: dict = {"balances": {}, "sequence": 0}

    @contextmanager
    def _locked_state(self) -> Iterator[dict]:
        with self._lock:
            yield self._state

    def mint(self, holder: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        with self._locked_state() as state:
            balances = state["balances"]
            key = holder.lower()
            balances[key] = balances.get(key, 0) + amount

    def balance_of(self, account_id: str) -> int:
        with self._locked_state() as state:
            return int(state["balances"].get(account_id.lower(), 0))

    def transfer_in(self, account_id: str, source: str, amount: int) -> TransferResult:
        return self._transfer(source, account_id, amount)

    def transfer_out(self, account_id: str, to: str, amount: int) -> TransferResult:
        return self._transfer(account_id, to, amount)

    def _transfer(self, source: str, destination: str, amount: int) -> TransferResult:
        if amount <= 0:
            return TransferResult(success=False, reason="Amount must be positive")
        src = source.lower()
        dst = destination.lower()
        with self._locked_state() as state:
            balances = state["balances"]
            available = int(balances.get(src, 0))
            if available < amount:
                return TransferResult(
                    success=False,
                    reason=f"Insufficient balance: {available} < {amount}",
                    insufficient_balance=True,
                )
            balances[src] = available - amount
            balances[dst] = int(balances.get(dst, 0)) + amount
            state["sequence"] = int(state.get("sequence", 0)) + 1
            reference = _transfer_reference(src, dst, amount, state["sequence"])
        logger.debug("Ledger transfer %s: %s -> %s (%s)", reference, src, dst, amount)
        return TransferResult(success=True, reference=reference)


class LocalLedger(InMemoryLedger):
    """File-backed ledger; state is shared by every process using the same path."""

    def __init__(self, path: Optional[Path] = None):
        super().__init__()
        self.path = path or DEFAULT_LEDGER_STATE_PATH
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".ledger.lock"
        with exclusive_lock(self._lock_path):
            if not self.path.exists():
                atomic_write_json(self.path, {"balances": {}, "sequence": 0})

    @contextmanager
    def _locked_state(self) -> Iterator[dict]:
        with self._lock, exclusive_lock(self._lock_path):
            with open(self.path, encoding="utf-8") as f:
                state = json.load(f)
            before = json.dumps(state, sort_keys=True)
            yield state
            if json.dumps(state, sort_keys=True) != before:
                atomic_write_json(self.path, state)


def _transfer_reference(source: str, destination: str, amount: int, sequence: int) -> str:
    seed = f"{source}:{destination}:{amount}:{sequence}".encode("utf-8")
    return "0x" + keccak(seed).hex()
