# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Escrow Manager

Custody of buyer funds between purchase and resolution.

Each issuer has its own EscrowManager, which is the escrow bucket kept
apart from the issuer's operating balance. A record is released exactly
once: to the buyer (win payout or timeout refund) or to the issuer
(forfeit on loss).

Checks-effects-interactions:
    1. check the record is still open (and the issuer can cover a prize)
    2. mark it released and move the issuer balance
    3. only then call the payment rail
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import (DuplicateTicket, EscrowAlreadyReleased,
                     InsufficientIssuerBalance, UnknownTicket)
from .ticket_types import Issuer

log = logging.getLogger(__name__)

RELEASE_BUYER = "buyer"
RELEASE_ISSUER = "issuer"

UndoLog = List[Callable[[], None]]


class PaymentRail:
    """External value transfer. Implementations may call back into the ledger."""

    def transfer(self, recipient: str, amount: int, memo: str = "") -> None:
        raise NotImplementedError


@dataclass
class Transfer:
    recipient: str
    amount: int
    memo: str = ""
    ts: int = field(default_factory=lambda: int(time.time()))


class BalanceBook(PaymentRail):
    """
    In-memory payment rail.

    Credits recipients and keeps a journal of every transfer.
    """

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.journal: List[Transfer] = []

    def transfer(self, recipient: str, amount: int, memo: str = "") -> None:
        if amount < 0:
            raise ValueError("Transfer amount must be non-negative")
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self.journal.append(Transfer(recipient=recipient, amount=amount, memo=memo))

    def balance_of(self, identity: str) -> int:
        return self.balances.get(identity, 0)


@dataclass
class EscrowRecord:
    """Funds held against one ticket."""
    ticket_id: str
    buyer: str
    amount: int
    released: bool = False
    release_kind: str = ""       # "buyer" or "issuer"
    released_amount: int = 0

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "buyer": self.buyer,
            "amount": self.amount,
            "released": self.released,
            "release_kind": self.release_kind,
            "released_amount": self.released_amount,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowRecord":
        return cls(
            ticket_id=data["ticket_id"],
            buyer=data["buyer"],
            amount=int(data["amount"]),
            released=bool(data.get("released", False)),
            release_kind=data.get("release_kind", ""),
            released_amount=int(data.get("released_amount", 0)),
        )


class EscrowManager:
    """
    Escrow bucket for one issuer.

    Usage:
        escrow = EscrowManager(issuer, rail)
        escrow.hold(ticket_id, buyer, 100)

        # Exactly one of:
        escrow.release_to_buyer(ticket_id, prize)   # win
        escrow.release_to_buyer(ticket_id, 100)     # timeout refund
        escrow.forfeit_to_issuer(ticket_id)         # loss
    """

    def __init__(self, issuer: Issuer, rail: PaymentRail):
        self.issuer = issuer
        self.rail = rail
        self.records: Dict[str, EscrowRecord] = {}

    def get(self, ticket_id: str) -> Optional[EscrowRecord]:
        return self.records.get(ticket_id)

    def outstanding(self) -> int:
        """Sum of escrow still held for unresolved tickets."""
        return sum(r.amount for r in self.records.values() if not r.released)

    def hold(self, ticket_id: str, buyer: str, amount: int,
             undo: Optional[UndoLog] = None) -> EscrowRecord:
        """Take custody of a ticket's payment."""
        if ticket_id in self.records:
            raise DuplicateTicket(f"Escrow already exists for {ticket_id}")
        if amount <= 0:
            raise ValueError("Escrow amount must be positive")
        record = EscrowRecord(ticket_id=ticket_id, buyer=buyer, amount=amount)
        self.records[ticket_id] = record
        if undo is not None:
            undo.append(lambda: self.records.pop(ticket_id, None))
        log.debug(f"Escrow hold {amount} for {ticket_id[:18]}...")
        return record

    def _open_record(self, ticket_id: str) -> EscrowRecord:
        record = self.records.get(ticket_id)
        if record is None:
            raise UnknownTicket(f"No escrow for {ticket_id}")
        if record.released:
            raise EscrowAlreadyReleased(
                f"Escrow for {ticket_id} already released to {record.release_kind}")
        return record

    def _settle(self, record: EscrowRecord, kind: str, amount: int, balance_delta: int,
                undo: Optional[UndoLog]):
        record.released = True
        record.release_kind = kind
        record.released_amount = amount
        self.issuer.operating_balance += balance_delta
        if undo is not None:
            undo.append(lambda: self._reopen(record, balance_delta))

    def _reopen(self, record: EscrowRecord, balance_delta: int):
        """Reverse one settlement. Only this record's balance move is undone."""
        record.released = False
        record.release_kind = ""
        record.released_amount = 0
        self.issuer.operating_balance -= balance_delta

    def release_to_buyer(self, ticket_id: str, amount: int,
                         undo: Optional[UndoLog] = None) -> int:
        """
        Pay the buyer.

        amount == held is a refund. amount > held is a prize: the held
        price goes to the issuer and the prize is drawn from the issuer's
        operating balance, all or nothing.

        Args:
            undo: Optional undo log; receives the inverse of the effects
                  before the payment rail is called

        Returns:
            Amount transferred to the buyer
        """
        record = self._open_record(ticket_id)
        if amount < 0:
            raise ValueError("Release amount must be non-negative")

        # Check
        available = self.issuer.operating_balance + record.amount
        if amount > available:
            raise InsufficientIssuerBalance(
                f"Issuer {self.issuer.issuer_id} cannot pay {amount} "
                f"(operating balance {self.issuer.operating_balance} + escrow {record.amount})")

        # Effects
        self._settle(record, RELEASE_BUYER, amount, record.amount - amount, undo)

        # Interaction
        self.rail.transfer(record.buyer, amount, memo=f"ticket:{ticket_id}")
        log.debug(f"Escrow released {amount} to {record.buyer} for {ticket_id[:18]}...")
        return amount

    def forfeit_to_issuer(self, ticket_id: str, undo: Optional[UndoLog] = None) -> int:
        """Move the held amount into the issuer's operating balance."""
        record = self._open_record(ticket_id)
        self._settle(record, RELEASE_ISSUER, record.amount, record.amount, undo)
        log.debug(f"Escrow forfeited {record.amount} to issuer {self.issuer.issuer_id} "
                  f"for {ticket_id[:18]}...")
        return record.amount

    def to_list(self) -> List[dict]:
        return [r.to_dict() for r in self.records.values()]

    def load_records(self, records: List[dict]):
        for data in records:
            record = EscrowRecord.from_dict(data)
            self.records[record.ticket_id] = record
