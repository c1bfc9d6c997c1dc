# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Ticket Ledger

Per-issuer ticket state machine:

    Unpurchased -> Committed -> ResolvedWin
                             -> ResolvedLose
                             -> Refunded

Flow:
  1. Buyer purchases: ticket COMMITTED, price held in escrow
  2. Issuer signs the ticket id off-ledger (signing oracle)
  3. Buyer or issuer submits the signature: resolve() decides win/lose
  4. No signature within timeout_window: buyer calls refund_timeout()

Each operation runs under the registry lock and is all-or-nothing: if
anything raises after the first effect, the ticket and every effect the
transition made (escrow, issuer balance, counters) are undone before the
error propagates.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .errors import (AlreadyRefunded, AlreadyResolved, DuplicateTicket,
                     InsufficientPayment, TimeoutNotReached, UnknownTicket)
from .escrow import EscrowManager, UndoLog
from .outcome import is_win
from .signature import SignatureLike, SignatureVerifier, extract_randomness
from .ticket_types import Issuer, Ticket, TicketStatus, compute_ticket_id

log = logging.getLogger(__name__)


class TicketLedger:
    """
    Ticket state machine for one issuer.

    The reporter is the registry handle that receives the sold, rewarded
    and timed_out notifications.

    Usage:
        ledger = TicketLedger(issuer, escrow, registry)
        ticket = ledger.purchase("0xBuyer...", 7, payment=100)
        ledger.resolve(ticket.ticket_id, signature_hex)
    """

    def __init__(self, issuer: Issuer, escrow: EscrowManager, reporter,
                 lock: Optional[threading.RLock] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.issuer = issuer
        self.escrow = escrow
        self.reporter = reporter
        self.verifier = SignatureVerifier(issuer.public_key)
        self.tickets: Dict[str, Ticket] = {}
        self._lock = lock or threading.RLock()
        self._clock = clock or time.time

    def now(self) -> int:
        return int(self._clock())

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSITIONS
    # ═══════════════════════════════════════════════════════════════════════

    @contextmanager
    def _transaction(self, ticket_id: str):
        """
        Undo this transition's own effects if it fails part-way.

        Effects register their inverse on the yielded undo log. Transitions
        that ran nested inside a payment-rail callback keep theirs.
        """
        ticket = self.tickets.get(ticket_id)
        saved_ticket = replace(ticket) if ticket else None
        undo: UndoLog = []
        try:
            yield undo
        except Exception:
            for step in reversed(undo):
                step()
            if ticket is not None:
                # In place: callers hold this object
                ticket.__dict__.update(vars(saved_ticket))
            log.warning(f"Rolled back transition for {ticket_id[:18]}...")
            raise

    def _report(self, counter: str, undo: UndoLog):
        """Bump an issuer counter through the reporter and log its reversal."""
        getattr(self.reporter, f"report_{counter}")(self.issuer.issuer_id)
        undo.append(lambda: self._uncount(counter))

    def _uncount(self, counter: str):
        counters = self.issuer.counters
        setattr(counters, counter, getattr(counters, counter) - 1)

    def _committed(self, ticket_id: str) -> Ticket:
        """Fetch a ticket and require it to still be COMMITTED."""
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            raise UnknownTicket(f"Unknown ticket {ticket_id}")
        if ticket.status == TicketStatus.REFUNDED:
            raise AlreadyRefunded(f"Ticket {ticket_id} was refunded")
        if ticket.status.is_terminal:
            raise AlreadyResolved(f"Ticket {ticket_id} is {ticket.status.value}")
        return ticket

    def purchase(self, buyer: str, ticket_number: int, payment: int) -> Ticket:
        """
        Buy a ticket.

        The ticket becomes visible only once the change (if any) has been
        paid, so nothing can resolve it while the purchase can still fail.

        Args:
            buyer: Buyer identity (payout destination)
            ticket_number: Buyer-chosen uint256
            payment: Amount paid; anything above ticket_price is returned

        Returns:
            COMMITTED ticket
        """
        with self._lock:
            price = self.issuer.ticket_price
            if payment < price:
                raise InsufficientPayment(f"Payment {payment} < ticket price {price}")

            ticket_id = compute_ticket_id(self.issuer.issuer_id, buyer, ticket_number)
            if ticket_id in self.tickets:
                raise DuplicateTicket(f"Ticket {ticket_id} already purchased")

            with self._transaction(ticket_id) as undo:
                ticket = Ticket(
                    ticket_id=ticket_id,
                    issuer_id=self.issuer.issuer_id,
                    buyer=buyer,
                    ticket_number=ticket_number,
                    escrow_amount=price,
                    purchase_time=self.now(),
                )
                self.escrow.hold(ticket_id, buyer, price, undo=undo)
                self._report("sold", undo)
                change = payment - price
                if change > 0:
                    self.escrow.rail.transfer(buyer, change, memo=f"change:{ticket_id}")
            self.tickets[ticket_id] = ticket

            log.info(f"Ticket {ticket_id[:18]}... purchased by {buyer} "
                     f"(issuer {self.issuer.issuer_id}, escrow {price})")
            return ticket

    def resolve(self, ticket_id: str, signature: SignatureLike) -> Ticket:
        """
        Resolve a ticket with the issuer's signature.

        A rejected signature leaves the ticket COMMITTED, so a correct
        signature can still be submitted later.

        Returns:
            Ticket in RESOLVED_WIN or RESOLVED_LOSE
        """
        with self._lock:
            ticket = self._committed(ticket_id)
            sig = self.verifier.verify(ticket_id, signature)
            randomness = extract_randomness(sig)
            won = is_win(randomness, self.issuer.odds_denominator)

            with self._transaction(ticket_id) as undo:
                ticket.randomness = randomness
                ticket.resolved_time = self.now()
                ticket.escrow_amount = 0
                if won:
                    prize = self.issuer.prize_amount
                    ticket.status = TicketStatus.RESOLVED_WIN
                    ticket.payout = prize
                    self._report("rewarded", undo)
                    self.escrow.release_to_buyer(ticket_id, prize, undo=undo)
                else:
                    ticket.status = TicketStatus.RESOLVED_LOSE
                    self.escrow.forfeit_to_issuer(ticket_id, undo=undo)

            if won:
                log.info(f"Ticket {ticket_id[:18]}... WON: {ticket.payout} paid to {ticket.buyer}")
            else:
                log.info(f"Ticket {ticket_id[:18]}... lost, escrow forfeited to issuer "
                         f"{self.issuer.issuer_id}")
            return ticket

    def refund_timeout(self, ticket_id: str) -> Ticket:
        """
        Refund a ticket the issuer never signed.

        Only possible once more than timeout_window seconds have passed
        since purchase.
        """
        with self._lock:
            ticket = self._committed(ticket_id)
            elapsed = self.now() - ticket.purchase_time
            if elapsed <= self.issuer.timeout_window:
                raise TimeoutNotReached(
                    f"Ticket {ticket_id} refundable in "
                    f"{self.issuer.timeout_window - elapsed + 1}s")

            with self._transaction(ticket_id) as undo:
                amount = ticket.escrow_amount
                ticket.status = TicketStatus.REFUNDED
                ticket.resolved_time = self.now()
                ticket.escrow_amount = 0
                ticket.payout = amount
                self._report("timed_out", undo)
                self.escrow.release_to_buyer(ticket_id, amount, undo=undo)

            log.warning(f"Ticket {ticket_id[:18]}... timed out, {amount} refunded to "
                        f"{ticket.buyer} (issuer {self.issuer.issuer_id})")
            return ticket

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self.tickets.get(ticket_id)

    def list_tickets(self, status: Optional[TicketStatus] = None,
                     buyer: str = "") -> List[Ticket]:
        """List tickets in purchase order, optionally filtered."""
        result = []
        for ticket in self.tickets.values():
            if status and ticket.status != status:
                continue
            if buyer and ticket.buyer != buyer:
                continue
            result.append(ticket)
        return result

    def expires_at(self, ticket: Ticket) -> int:
        return ticket.purchase_time + self.issuer.timeout_window

    def is_refundable(self, ticket_id: str) -> bool:
        ticket = self.tickets.get(ticket_id)
        if not ticket or ticket.status != TicketStatus.COMMITTED:
            return False
        return self.now() > self.expires_at(ticket)

    def outstanding_escrow(self) -> int:
        return self.escrow.outstanding()

    def ticket_view(self, ticket: Ticket) -> dict:
        """Ticket dict with derived timeout fields, for API responses."""
        data = ticket.to_dict()
        data["expires_at"] = self.expires_at(ticket)
        data["refundable"] = self.is_refundable(ticket.ticket_id)
        return data

    def to_dict(self) -> dict:
        return {
            "tickets": [t.to_dict() for t in self.tickets.values()],
            "escrow": self.escrow.to_list(),
        }

    def load(self, data: dict):
        for ticket_data in data.get("tickets", []):
            ticket = Ticket.from_dict(ticket_data)
            self.tickets[ticket.ticket_id] = ticket
        self.escrow.load_records(data.get("escrow", []))
