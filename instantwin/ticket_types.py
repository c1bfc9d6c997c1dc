# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Data Types

Ticket and Issuer records kept by the ledger and the registry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import time

from web3 import Web3

# Domain tag mixed into every ticket id, so ticket ids can never collide
# with any other keccak digest the issuer might be asked to sign.
TICKET_DOMAIN = Web3.keccak(text="InstantWin.Ticket.v1")

UINT256_MAX = 2 ** 256 - 1


class TicketStatus(Enum):
    """Ticket lifecycle: COMMITTED is the only non-terminal stored state."""
    UNPURCHASED = "unpurchased"
    COMMITTED = "committed"
    RESOLVED_WIN = "resolved_win"
    RESOLVED_LOSE = "resolved_lose"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.RESOLVED_WIN,
                        TicketStatus.RESOLVED_LOSE,
                        TicketStatus.REFUNDED)


def compute_ticket_id(issuer_id: int, buyer: str, ticket_number: int) -> str:
    """
    Compute the ticket id.

    keccak256(DOMAIN || uint256 issuer_id || keccak(buyer) || uint256 number)

    Every packed field is 32 bytes wide, so two different inputs can never
    pack to the same byte string.

    Returns:
        0x-prefixed 32-byte hex string
    """
    if not 0 <= ticket_number <= UINT256_MAX:
        raise ValueError(f"ticket_number out of uint256 range: {ticket_number}")
    if issuer_id < 0:
        raise ValueError(f"Invalid issuer_id: {issuer_id}")
    if not buyer:
        raise ValueError("buyer identity is required")
    digest = Web3.solidity_keccak(
        ["bytes32", "uint256", "bytes32", "uint256"],
        [TICKET_DOMAIN, issuer_id, Web3.keccak(text=buyer), ticket_number],
    )
    return Web3.to_hex(digest)


def ticket_id_bytes(ticket_id: str) -> bytes:
    """Decode a 0x-prefixed ticket id into its 32 raw bytes."""
    raw = ticket_id[2:] if ticket_id.startswith("0x") else ticket_id
    try:
        data = bytes.fromhex(raw)
    except ValueError:
        raise ValueError(f"Ticket id is not hex: {ticket_id}")
    if len(data) != 32:
        raise ValueError(f"Ticket id must be 32 bytes, got {len(data)}")
    return data


@dataclass
class Ticket:
    """
    A single play.

    Created by purchase in COMMITTED, moved once to a terminal status,
    then kept forever for audit.
    """
    ticket_id: str
    issuer_id: int
    buyer: str
    ticket_number: int
    escrow_amount: int
    purchase_time: int
    status: TicketStatus = TicketStatus.COMMITTED

    # Audit trail (set on the terminal transition)
    resolved_time: int = 0
    randomness: Optional[int] = None
    payout: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "ticket_id": self.ticket_id,
            "issuer_id": self.issuer_id,
            "buyer": self.buyer,
            # uint256 values exceed JSON-safe integers in most clients
            "ticket_number": str(self.ticket_number),
            "escrow_amount": self.escrow_amount,
            "purchase_time": self.purchase_time,
            "status": self.status.value,
            "resolved_time": self.resolved_time,
            "randomness": str(self.randomness) if self.randomness is not None else None,
            "payout": self.payout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Ticket":
        """Create Ticket from dictionary."""
        randomness = data.get("randomness")
        return cls(
            ticket_id=data["ticket_id"],
            issuer_id=int(data["issuer_id"]),
            buyer=data["buyer"],
            ticket_number=int(data["ticket_number"]),
            escrow_amount=int(data["escrow_amount"]),
            purchase_time=int(data["purchase_time"]),
            status=TicketStatus(data.get("status", "committed")),
            resolved_time=int(data.get("resolved_time", 0)),
            randomness=int(randomness) if randomness is not None else None,
            payout=int(data.get("payout", 0)),
        )


@dataclass
class IssuerCounters:
    """Reputation counters, increment-only."""
    sold: int = 0
    rewarded: int = 0
    timed_out: int = 0

    def to_dict(self) -> dict:
        return {"sold": self.sold, "rewarded": self.rewarded,
                "timed_out": self.timed_out}


@dataclass
class Issuer:
    """
    Issuer record.

    public_key is fixed at registration. operating_balance is issuer
    capital only; buyer escrow is accounted in the issuer's EscrowManager.
    """
    issuer_id: int
    public_key: str          # 0x + 128 hex chars (uncompressed secp256k1)
    controller: str          # Checksum address allowed to withdraw
    ticket_price: int
    prize_amount: int
    odds_denominator: int
    timeout_window: int      # Seconds
    operating_balance: int = 0
    counters: IssuerCounters = field(default_factory=IssuerCounters)
    created_time: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "issuer_id": self.issuer_id,
            "public_key": self.public_key,
            "controller": self.controller,
            "ticket_price": self.ticket_price,
            "prize_amount": self.prize_amount,
            "odds_denominator": str(self.odds_denominator),
            "timeout_window": self.timeout_window,
            "operating_balance": self.operating_balance,
            "counters": self.counters.to_dict(),
            "created_time": self.created_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Issuer":
        """Create Issuer from dictionary."""
        counters = data.get("counters", {})
        return cls(
            issuer_id=int(data["issuer_id"]),
            public_key=data["public_key"],
            controller=data["controller"],
            ticket_price=int(data["ticket_price"]),
            prize_amount=int(data["prize_amount"]),
            odds_denominator=int(data["odds_denominator"]),
            timeout_window=int(data["timeout_window"]),
            operating_balance=int(data.get("operating_balance", 0)),
            counters=IssuerCounters(
                sold=int(counters.get("sold", 0)),
                rewarded=int(counters.get("rewarded", 0)),
                timed_out=int(counters.get("timed_out", 0)),
            ),
            created_time=int(data.get("created_time", time.time())),
        )
