# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Signature Verifier

The issuer signs every ticket id off-ledger. Nobody knows the signature
before the issuer produces it and only the issuer key can produce it, so
its r component serves as the ticket's random seed.

Canonical message:
    keccak256(MESSAGE_PREFIX || ticket_id)

Wire format (65 bytes, hex):
    r (32) || s (32) || v (1)     v in {0, 1, 27, 28}

Only the low-s form of a signature is accepted. Otherwise the issuer
could flip s -> N - s and present a second valid signature for the same
ticket.
"""

import logging
from dataclasses import dataclass
from typing import Union

from eth_account import Account
from eth_keys import keys
from eth_keys.constants import SECPK1_N as SECP256K1_N
from eth_keys.exceptions import BadSignature, ValidationError
from web3 import Web3

from .errors import InvalidSignatureEncoding, UnauthorizedSigner
from .ticket_types import ticket_id_bytes

log = logging.getLogger(__name__)

# Versioned prefix; bump the version if the message layout ever changes
MESSAGE_PREFIX = b"\x19InstantWin Ticket v1:\n32"

SECP256K1_HALF_N = SECP256K1_N // 2
SIGNATURE_LENGTH = 65


def canonical_message(ticket_id: str) -> bytes:
    """Bytes the issuer signs for a ticket."""
    return MESSAGE_PREFIX + ticket_id_bytes(ticket_id)


def message_hash(ticket_id: str) -> bytes:
    """keccak256 digest of the canonical message."""
    return bytes(Web3.keccak(canonical_message(ticket_id)))


@dataclass(frozen=True)
class Signature:
    """Parsed ECDSA signature with v normalized to {0, 1}."""
    v: int
    r: int
    s: int

    @classmethod
    def from_vrs(cls, v: int, r: int, s: int) -> "Signature":
        """Validate and build a canonical signature."""
        if v in (27, 28):
            v -= 27
        if v not in (0, 1):
            raise InvalidSignatureEncoding(f"Invalid recovery id: {v}")
        if not 1 <= r < SECP256K1_N:
            raise InvalidSignatureEncoding("r out of range")
        if not 1 <= s < SECP256K1_N:
            raise InvalidSignatureEncoding("s out of range")
        if s > SECP256K1_HALF_N:
            raise InvalidSignatureEncoding("Non-canonical signature (high s)")
        return cls(v=v, r=r, s=s)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Signature":
        if len(data) != SIGNATURE_LENGTH:
            raise InvalidSignatureEncoding(
                f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(data)}")
        r = int.from_bytes(data[0:32], "big")
        s = int.from_bytes(data[32:64], "big")
        return cls.from_vrs(data[64], r, s)

    @classmethod
    def from_hex(cls, value: str) -> "Signature":
        raw = value[2:] if value.startswith("0x") else value
        try:
            data = bytes.fromhex(raw)
        except ValueError:
            raise InvalidSignatureEncoding("Signature is not valid hex")
        return cls.from_bytes(data)

    def to_bytes(self) -> bytes:
        return (self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big")
                + bytes([self.v + 27]))

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


SignatureLike = Union[Signature, str, bytes]


def parse_signature(signature: SignatureLike) -> Signature:
    """Accept a Signature, hex string or raw bytes."""
    if isinstance(signature, Signature):
        # Re-run the checks; a Signature may have been built directly
        return Signature.from_vrs(signature.v, signature.r, signature.s)
    if isinstance(signature, (bytes, bytearray)):
        return Signature.from_bytes(bytes(signature))
    if isinstance(signature, str):
        return Signature.from_hex(signature)
    raise InvalidSignatureEncoding(f"Unsupported signature type: {type(signature).__name__}")


def load_public_key(value: str) -> keys.PublicKey:
    """
    Parse a secp256k1 public key.

    Accepts 64-byte raw, 65-byte 0x04-prefixed, or 33-byte compressed hex.
    """
    raw = value[2:] if value.startswith("0x") else value
    try:
        data = bytes.fromhex(raw)
    except ValueError:
        raise ValueError("Public key is not valid hex")
    try:
        if len(data) == 33:
            return keys.PublicKey.from_compressed_bytes(data)
        if len(data) == 65 and data[0] == 0x04:
            data = data[1:]
        if len(data) == 64:
            return keys.PublicKey(data)
    except (ValidationError, BadSignature) as e:
        raise ValueError(f"Invalid public key: {e}")
    raise ValueError(f"Unsupported public key length: {len(data)} bytes")


def normalize_public_key(value: str) -> str:
    """Uncompressed 0x-hex form used for storage and comparison."""
    return load_public_key(value).to_hex()


def extract_randomness(signature: Signature) -> int:
    """
    Randomness carried by a signature.

    r is fixed by the (deterministic) nonce, not chosen freely by the
    signer, and is always < N < 2**256.
    """
    return signature.r


def sign_ticket(private_key: Union[str, bytes], ticket_id: str) -> Signature:
    """
    Sign a ticket id with RFC 6979 deterministic nonces.

    The same key and ticket always yield the same signature, so the signer
    cannot mint alternative signatures and keep the one that loses.
    """
    account = Account.from_key(private_key)
    key = keys.PrivateKey(bytes(account.key))
    signed = key.sign_msg_hash(message_hash(ticket_id))
    return Signature.from_vrs(signed.v, signed.r, signed.s)


class SignatureVerifier:
    """
    Verifies ticket signatures against one issuer key.

    Usage:
        verifier = SignatureVerifier(issuer.public_key)
        sig = verifier.verify(ticket_id, "0x...")
        randomness = extract_randomness(sig)
    """

    def __init__(self, public_key: str):
        self.public_key = load_public_key(public_key)

    def recover(self, ticket_id: str, signature: SignatureLike) -> keys.PublicKey:
        """Recover the signer key; raises InvalidSignatureEncoding."""
        sig = parse_signature(signature)
        digest = message_hash(ticket_id)
        try:
            return keys.Signature(vrs=(sig.v, sig.r, sig.s)).recover_public_key_from_msg_hash(digest)
        except (BadSignature, ValidationError) as e:
            raise InvalidSignatureEncoding(f"Signature recovery failed: {e}")

    def verify(self, ticket_id: str, signature: SignatureLike) -> Signature:
        """
        Verify that the issuer signed this ticket.

        Returns:
            Canonical parsed signature

        Raises:
            InvalidSignatureEncoding: malformed, high-s or unrecoverable
            UnauthorizedSigner: recovered key is not the issuer key
        """
        sig = parse_signature(signature)
        recovered = self.recover(ticket_id, sig)
        if recovered.to_bytes() != self.public_key.to_bytes():
            log.warning(f"Rejected signature for {ticket_id[:18]}... from "
                        f"{recovered.to_checksum_address()}")
            raise UnauthorizedSigner(
                f"Signature by {recovered.to_checksum_address()} is not from the issuer")
        return sig
