# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Issuer Registry

Creates issuers, routes ticket operations to the issuer's ledger and keeps
the per-issuer reputation counters (sold, rewarded, timed_out).

Issuers are appended and never removed. Each issuer owns:
  - an Issuer record (parameters, operating balance, counters)
  - an EscrowManager (buyer funds, never withdrawable)
  - a TicketLedger (ticket state machine)

All mutating operations run under one re-entrant lock.
"""

import json
import logging
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .errors import (InsufficientDeposit, InsufficientIssuerBalance,
                     UnauthorizedCaller, UnknownIssuer, UnknownTicket)
from .escrow import BalanceBook, EscrowManager, PaymentRail
from .ledger import TicketLedger
from .outcome import win_probability
from .signature import SignatureLike, load_public_key
from .ticket_types import Issuer, Ticket

log = logging.getLogger(__name__)

DEFAULT_MINIMUM_DEPOSIT = 1000
STATE_VERSION = "1.0"


@dataclass
class IssuerAccount:
    """Everything the registry keeps for one issuer."""
    issuer: Issuer
    escrow: EscrowManager
    ledger: TicketLedger

    def custody(self) -> int:
        """Everything held for this issuer: capital plus buyer escrow."""
        return self.issuer.operating_balance + self.escrow.outstanding()

    def free_balance(self) -> int:
        """Withdrawable funds: the operating-balance bucket, never escrow."""
        return self.issuer.operating_balance


class IssuerRegistry:
    """
    Multi-issuer registry.

    Usage:
        registry = IssuerRegistry(minimum_deposit=1000)
        issuer_id = registry.register_issuer(pubkey, 100, 1000, 10, 3600, 5000)

        ticket = registry.purchase(issuer_id, "0xBuyer...", 42, 100)
        registry.resolve(ticket.ticket_id, signature)
        registry.refund_timeout(ticket.ticket_id)
    """

    def __init__(self, minimum_deposit: int = DEFAULT_MINIMUM_DEPOSIT,
                 rail: Optional[PaymentRail] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.minimum_deposit = minimum_deposit
        self.rail = rail if rail is not None else BalanceBook()
        self.clock = clock or time.time
        self.accounts: Dict[int, IssuerAccount] = {}
        self.ticket_index: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._next_id = 1

    # ═══════════════════════════════════════════════════════════════════════
    # ISSUERS
    # ═══════════════════════════════════════════════════════════════════════

    def _attach(self, issuer: Issuer) -> IssuerAccount:
        escrow = EscrowManager(issuer, self.rail)
        ledger = TicketLedger(issuer, escrow, self, lock=self._lock, clock=self.clock)
        account = IssuerAccount(issuer=issuer, escrow=escrow, ledger=ledger)
        self.accounts[issuer.issuer_id] = account
        return account

    def register_issuer(self, public_key: str, ticket_price: int, prize_amount: int,
                        odds_denominator: int, timeout_window: int, deposit: int,
                        controller: str = "") -> int:
        """
        Register a new issuer.

        Args:
            public_key: Issuer's secp256k1 public key (hex)
            ticket_price: Price per ticket
            prize_amount: Paid to the buyer on a win
            odds_denominator: Win when randomness % odds_denominator == 0
            timeout_window: Seconds before a buyer may claim a refund
            deposit: Initial operating balance (at-risk capital for prizes)
            controller: Address allowed to withdraw (default: key's address)

        Returns:
            New issuer_id
        """
        if ticket_price <= 0:
            raise ValueError("ticket_price must be positive")
        if prize_amount <= 0:
            raise ValueError("prize_amount must be positive")
        if odds_denominator < 1:
            raise ValueError("odds_denominator must be >= 1")
        if timeout_window <= 0:
            raise ValueError("timeout_window must be positive")
        if deposit < self.minimum_deposit:
            raise InsufficientDeposit(
                f"Deposit {deposit} below minimum {self.minimum_deposit}")

        key = load_public_key(public_key)

        with self._lock:
            issuer = Issuer(
                issuer_id=self._next_id,
                public_key=key.to_hex(),
                controller=controller or key.to_checksum_address(),
                ticket_price=ticket_price,
                prize_amount=prize_amount,
                odds_denominator=odds_denominator,
                timeout_window=timeout_window,
                operating_balance=deposit,
                created_time=int(self.clock()),
            )
            self._next_id += 1
            self._attach(issuer)

        log.info(f"Issuer {issuer.issuer_id} registered: signer "
                 f"{key.to_checksum_address()}, price {ticket_price}, prize {prize_amount}, "
                 f"odds 1/{odds_denominator}, timeout {timeout_window}s, deposit {deposit}")
        return issuer.issuer_id

    def account(self, issuer_id: int) -> IssuerAccount:
        account = self.accounts.get(issuer_id)
        if account is None:
            raise UnknownIssuer(f"Unknown issuer {issuer_id}")
        return account

    def get_issuer(self, issuer_id: int) -> Issuer:
        return self.account(issuer_id).issuer

    def list_issuers(self) -> List[Issuer]:
        """Issuers in registration order."""
        return [a.issuer for a in self.accounts.values()]

    def deposit(self, issuer_id: int, amount: int) -> int:
        """Add capital to an issuer's operating balance."""
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")
        with self._lock:
            issuer = self.get_issuer(issuer_id)
            issuer.operating_balance += amount
            log.info(f"Issuer {issuer_id} deposit {amount} "
                     f"(balance {issuer.operating_balance})")
            return issuer.operating_balance

    def withdraw_operating_balance(self, issuer_id: int, amount: int, caller: str) -> int:
        """
        Withdraw unencumbered capital to the issuer's controller.

        Escrowed buyer funds sit in a separate bucket and can never be
        withdrawn here.

        Returns:
            Remaining operating balance
        """
        if amount <= 0:
            raise ValueError("Withdrawal amount must be positive")
        with self._lock:
            account = self.account(issuer_id)
            issuer = account.issuer
            if caller.lower() != issuer.controller.lower():
                raise UnauthorizedCaller(f"{caller} does not control issuer {issuer_id}")
            free = account.free_balance()
            if amount > free:
                raise InsufficientIssuerBalance(
                    f"Withdrawal {amount} exceeds free balance {free}")

            issuer.operating_balance -= amount
            try:
                self.rail.transfer(issuer.controller, amount, memo=f"withdraw:{issuer_id}")
            except Exception:
                issuer.operating_balance += amount
                raise

            log.info(f"Issuer {issuer_id} withdrew {amount} "
                     f"(balance {issuer.operating_balance})")
            return issuer.operating_balance

    # ═══════════════════════════════════════════════════════════════════════
    # REPUTATION (called by TicketLedger only)
    # ═══════════════════════════════════════════════════════════════════════

    def report_sold(self, issuer_id: int):
        self.get_issuer(issuer_id).counters.sold += 1

    def report_rewarded(self, issuer_id: int):
        self.get_issuer(issuer_id).counters.rewarded += 1

    def report_timed_out(self, issuer_id: int):
        self.get_issuer(issuer_id).counters.timed_out += 1

    def reputation(self, issuer_id: int) -> dict:
        """Counters plus timeout and reward rates over tickets sold."""
        counters = self.get_issuer(issuer_id).counters
        sold = counters.sold
        return {
            "issuer_id": issuer_id,
            **counters.to_dict(),
            "timeout_rate": counters.timed_out / sold if sold else 0.0,
            "reward_rate": counters.rewarded / sold if sold else 0.0,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # TICKETS
    # ═══════════════════════════════════════════════════════════════════════

    def ledger(self, issuer_id: int) -> TicketLedger:
        return self.account(issuer_id).ledger

    def _ledger_for_ticket(self, ticket_id: str) -> TicketLedger:
        issuer_id = self.ticket_index.get(ticket_id.lower())
        if issuer_id is None:
            raise UnknownTicket(f"Unknown ticket {ticket_id}")
        return self.ledger(issuer_id)

    def purchase(self, issuer_id: int, buyer: str, ticket_number: int,
                 payment: int) -> Ticket:
        with self._lock:
            ticket = self.ledger(issuer_id).purchase(buyer, ticket_number, payment)
            self.ticket_index[ticket.ticket_id] = issuer_id
            return ticket

    def resolve(self, ticket_id: str, signature: SignatureLike) -> Ticket:
        with self._lock:
            return self._ledger_for_ticket(ticket_id).resolve(ticket_id.lower(), signature)

    def refund_timeout(self, ticket_id: str) -> Ticket:
        with self._lock:
            return self._ledger_for_ticket(ticket_id).refund_timeout(ticket_id.lower())

    def find_ticket(self, ticket_id: str) -> Ticket:
        ledger = self._ledger_for_ticket(ticket_id)
        return ledger.get_ticket(ticket_id.lower())

    def ticket_view(self, ticket_id: str) -> dict:
        ledger = self._ledger_for_ticket(ticket_id)
        return ledger.ticket_view(ledger.get_ticket(ticket_id.lower()))

    def issuer_view(self, issuer_id: int) -> dict:
        account = self.account(issuer_id)
        data = account.issuer.to_dict()
        data["escrow_outstanding"] = account.escrow.outstanding()
        data["custody"] = account.custody()
        data["free_balance"] = account.free_balance()
        data["win_probability"] = str(win_probability(account.issuer.odds_denominator))
        data["reputation"] = self.reputation(issuer_id)
        return data

    # ═══════════════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════════════

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "version": STATE_VERSION,
                "updated_ts": int(time.time()),
                "minimum_deposit": self.minimum_deposit,
                "next_id": self._next_id,
                "issuers": [
                    {"issuer": a.issuer.to_dict(), "ledger": a.ledger.to_dict()}
                    for a in self.accounts.values()
                ],
            }

    @classmethod
    def from_dict(cls, data: dict, rail: Optional[PaymentRail] = None,
                  clock: Optional[Callable[[], float]] = None) -> "IssuerRegistry":
        registry = cls(
            minimum_deposit=int(data.get("minimum_deposit", DEFAULT_MINIMUM_DEPOSIT)),
            rail=rail,
            clock=clock,
        )
        for entry in data.get("issuers", []):
            issuer = Issuer.from_dict(entry["issuer"])
            account = registry._attach(issuer)
            account.ledger.load(entry.get("ledger", {}))
            for ticket_id in account.ledger.tickets:
                registry.ticket_index[ticket_id] = issuer.issuer_id
        registry._next_id = int(data.get("next_id", len(registry.accounts) + 1))
        return registry

    def save(self, path: Union[str, Path]):
        """Persist to disk (atomic write via temp file + rename)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with tempfile.NamedTemporaryFile("w", dir=path.parent, prefix=path.name,
                                             suffix=".tmp", delete=False) as f:
                tmp_file = Path(f.name)
                json.dump(self.to_dict(), f, indent=2)
            tmp_file.replace(path)

    @classmethod
    def load(cls, path: Union[str, Path], rail: Optional[PaymentRail] = None,
             clock: Optional[Callable[[], float]] = None,
             minimum_deposit: Optional[int] = None) -> "IssuerRegistry":
        """Load from disk, or start empty if the file does not exist."""
        path = Path(path)
        if not path.exists():
            if minimum_deposit is None:
                minimum_deposit = DEFAULT_MINIMUM_DEPOSIT
            return cls(minimum_deposit=minimum_deposit,
                       rail=rail, clock=clock)
        with open(path) as f:
            data = json.load(f)
        registry = cls.from_dict(data, rail=rail, clock=clock)
        if minimum_deposit is not None:
            registry.minimum_deposit = minimum_deposit
        log.info(f"Loaded {len(registry.accounts)} issuers, "
                 f"{len(registry.ticket_index)} tickets from {path}")
        return registry
