# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Error taxonomy

Every failure of a ledger or registry operation is reported synchronously
as one of these exceptions. None of them leaves state changed.
"""


class InstantWinError(Exception):
    """Base class for protocol errors."""

    code = "instantwin_error"
    status = 400

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InsufficientPayment(InstantWinError):
    code = "insufficient_payment"
    status = 402


class DuplicateTicket(InstantWinError):
    code = "duplicate_ticket"
    status = 409


class UnauthorizedSigner(InstantWinError):
    code = "unauthorized_signer"
    status = 403


class InvalidSignatureEncoding(InstantWinError):
    """Malformed or non-canonical (high-s) signature."""
    code = "invalid_signature_encoding"
    status = 400


class TimeoutNotReached(InstantWinError):
    code = "timeout_not_reached"
    status = 409


class AlreadyResolved(InstantWinError):
    code = "already_resolved"
    status = 409


class AlreadyRefunded(InstantWinError):
    code = "already_refunded"
    status = 409


class InsufficientIssuerBalance(InstantWinError):
    code = "insufficient_issuer_balance"
    status = 409


class InsufficientDeposit(InstantWinError):
    code = "insufficient_deposit"
    status = 400


class UnknownIssuer(InstantWinError):
    code = "unknown_issuer"
    status = 404


class UnknownTicket(InstantWinError):
    code = "unknown_ticket"
    status = 404


class UnauthorizedCaller(InstantWinError):
    code = "unauthorized_caller"
    status = 403


class EscrowAlreadyReleased(InstantWinError):
    """Internal invariant: an escrow record was released twice."""
    code = "escrow_already_released"
    status = 500
