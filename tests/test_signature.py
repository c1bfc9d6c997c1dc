import pytest
from eth_keys import keys
from eth_keys.constants import SECPK1_N as SECP256K1_N

from instantwin.errors import InvalidSignatureEncoding, UnauthorizedSigner
from instantwin.signature import (MESSAGE_PREFIX, Signature, SignatureVerifier,
                                  canonical_message, extract_randomness,
                                  load_public_key, message_hash, sign_ticket)
from instantwin.ticket_types import compute_ticket_id

from conftest import BUYER, ISSUER_KEY, OTHER_KEY

TICKET_ID = compute_ticket_id(1, BUYER, 42)


@pytest.fixture
def verifier(oracle):
    return SignatureVerifier(oracle.public_key)


def test_canonical_message_is_prefixed_ticket_id():
    message = canonical_message(TICKET_ID)
    assert message.startswith(MESSAGE_PREFIX)
    assert message[len(MESSAGE_PREFIX):] == bytes.fromhex(TICKET_ID[2:])
    assert len(message_hash(TICKET_ID)) == 32


def test_signing_is_deterministic():
    assert sign_ticket(ISSUER_KEY, TICKET_ID) == sign_ticket(ISSUER_KEY, TICKET_ID)
    assert sign_ticket(ISSUER_KEY, TICKET_ID) != sign_ticket(OTHER_KEY, TICKET_ID)


def test_signatures_are_low_s():
    for number in range(10):
        sig = sign_ticket(ISSUER_KEY, compute_ticket_id(1, BUYER, number))
        assert sig.s <= SECP256K1_N // 2


def test_verify_accepts_issuer_signature(verifier):
    sig = sign_ticket(ISSUER_KEY, TICKET_ID)
    assert verifier.verify(TICKET_ID, sig.to_hex()) == sig
    assert extract_randomness(sig) == sig.r


def test_verify_accepts_raw_recovery_id(verifier):
    sig = sign_ticket(ISSUER_KEY, TICKET_ID)
    raw = sig.r.to_bytes(32, "big") + sig.s.to_bytes(32, "big") + bytes([sig.v])
    assert verifier.verify(TICKET_ID, raw) == sig


def test_foreign_key_is_unauthorized(verifier):
    forged = sign_ticket(OTHER_KEY, TICKET_ID)
    with pytest.raises(UnauthorizedSigner):
        verifier.verify(TICKET_ID, forged.to_hex())


def test_signature_for_other_ticket_is_unauthorized(verifier):
    other = sign_ticket(ISSUER_KEY, compute_ticket_id(1, BUYER, 43))
    with pytest.raises(UnauthorizedSigner):
        verifier.verify(TICKET_ID, other.to_hex())


def test_malleated_signature_is_rejected(verifier, oracle):
    sig = sign_ticket(ISSUER_KEY, TICKET_ID)
    high_s = SECP256K1_N - sig.s
    flipped_v = sig.v ^ 1

    # Without the guard the twin signature recovers the same issuer key
    twin = keys.Signature(vrs=(flipped_v, sig.r, high_s))
    recovered = twin.recover_public_key_from_msg_hash(message_hash(TICKET_ID))
    assert recovered.to_hex() == oracle.public_key

    encoded = (sig.r.to_bytes(32, "big") + high_s.to_bytes(32, "big")
               + bytes([flipped_v + 27])).hex()
    with pytest.raises(InvalidSignatureEncoding):
        verifier.verify(TICKET_ID, encoded)
    with pytest.raises(InvalidSignatureEncoding):
        verifier.verify(TICKET_ID, Signature(v=flipped_v, r=sig.r, s=high_s))


@pytest.mark.parametrize("bad", [
    "0x1234",
    "zz" * 65,
    "0x" + "00" * 65,
    "0x" + "11" * 64 + "05",
    "0x" + "ff" * 32 + "11" * 32 + "1b",
])
def test_malformed_signatures(verifier, bad):
    with pytest.raises(InvalidSignatureEncoding):
        verifier.verify(TICKET_ID, bad)


def test_unsupported_signature_type(verifier):
    with pytest.raises(InvalidSignatureEncoding):
        verifier.verify(TICKET_ID, 12345)


def test_hex_encoding_uses_27_28_recovery_id():
    sig = sign_ticket(ISSUER_KEY, TICKET_ID)
    encoded = sig.to_bytes()
    assert len(encoded) == 65
    assert encoded[64] in (27, 28)
    assert Signature.from_hex(sig.to_hex()) == sig


def test_public_key_formats(oracle):
    key = load_public_key(oracle.public_key)
    compressed = "0x" + key.to_compressed_bytes().hex()
    prefixed = "0x04" + oracle.public_key[2:]
    assert load_public_key(compressed).to_bytes() == key.to_bytes()
    assert load_public_key(prefixed).to_bytes() == key.to_bytes()
    with pytest.raises(ValueError):
        load_public_key("0x1234")
    with pytest.raises(ValueError):
        load_public_key("not-hex")
