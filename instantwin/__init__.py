"""
InstantWin

Instant-win tickets resolved by issuer signatures, with escrow and a
timeout refund path.

Architecture:
  - Tickets are bought from an issuer; the price is held in escrow
  - The issuer's signing oracle signs the ticket id OFF-LEDGER
  - The signature's r value decides win/lose (r mod odds == 0)
  - No signature within the timeout window: the buyer is refunded

Usage:
    from instantwin import IssuerRegistry, SigningOracle

    oracle = SigningOracle("0x<issuer private key>")
    registry = IssuerRegistry(minimum_deposit=1000)
    issuer_id = registry.register_issuer(
        oracle.public_key, ticket_price=100, prize_amount=1000,
        odds_denominator=10, timeout_window=3600, deposit=5000)

    ticket = registry.purchase(issuer_id, "0xBuyer...", 42, payment=100)
    registry.resolve(ticket.ticket_id, oracle.sign(ticket.ticket_id))
"""

from .ticket_types import Ticket, TicketStatus, Issuer, IssuerCounters, compute_ticket_id
from .errors import (
    InstantWinError,
    InsufficientPayment,
    DuplicateTicket,
    UnauthorizedSigner,
    InvalidSignatureEncoding,
    TimeoutNotReached,
    AlreadyResolved,
    AlreadyRefunded,
    InsufficientIssuerBalance,
    InsufficientDeposit,
    UnknownIssuer,
    UnknownTicket,
    UnauthorizedCaller,
    EscrowAlreadyReleased,
)
from .outcome import is_win
from .signature import Signature, SignatureVerifier, extract_randomness, sign_ticket
from .escrow import EscrowManager, PaymentRail, BalanceBook
from .ledger import TicketLedger
from .registry import IssuerRegistry
from .oracle import SigningOracle, OracleClient
from .client import APIClient

__version__ = "0.1.0"
__all__ = [
    # Types
    "Ticket", "TicketStatus", "Issuer", "IssuerCounters", "compute_ticket_id",
    # Errors
    "InstantWinError", "InsufficientPayment", "DuplicateTicket",
    "UnauthorizedSigner", "InvalidSignatureEncoding", "TimeoutNotReached",
    "AlreadyResolved", "AlreadyRefunded", "InsufficientIssuerBalance",
    "InsufficientDeposit", "UnknownIssuer", "UnknownTicket",
    "UnauthorizedCaller", "EscrowAlreadyReleased",
    # Core
    "is_win", "Signature", "SignatureVerifier", "extract_randomness", "sign_ticket",
    "EscrowManager", "PaymentRail", "BalanceBook", "TicketLedger", "IssuerRegistry",
    # Services
    "SigningOracle", "OracleClient", "APIClient",
]
