import pytest

from x402_settlement.codec import authorization_digest
from x402_settlement.errors import InvalidSignature
from x402_settlement.signature import (
    SECP256K1_N,
    recover_signer,
    split_signature,
    verify_signature,
)

from conftest import ATTACKER, PAYER


def _with_components(signature: str, r: int, s: int, v: int) -> str:
    return "0x" + r.to_bytes(32, "big").hex() + s.to_bytes(32, "big").hex() + bytes([v]).hex()


@pytest.fixture
def signed(gate, make_authorization, sign):
    auth = make_authorization()
    return authorization_digest(auth, gate.domain), sign(auth)


def test_valid_signature(signed):
    digest, signature = signed
    assert verify_signature(digest, signature, PAYER.address) == PAYER.address


def test_claimed_signer_is_case_insensitive(signed):
    digest, signature = signed
    assert verify_signature(digest, signature, PAYER.address.lower()) == PAYER.address


def test_other_signer_rejected(gate, make_authorization, sign):
    auth = make_authorization()
    signature = sign(auth, key=ATTACKER.key)
    with pytest.raises(InvalidSignature):
        verify_signature(authorization_digest(auth, gate.domain), signature, PAYER.address)


def test_signature_for_another_digest_rejected(gate, make_authorization, sign):
    first, second = make_authorization(), make_authorization()
    signature = sign(first)
    with pytest.raises(InvalidSignature):
        verify_signature(authorization_digest(second, gate.domain), signature, PAYER.address)


def test_recovery_id_zero_or_one_accepted(signed):
    digest, signature = signed
    v, r, s = split_signature(signature)
    compact = _with_components(signature, r, s, v - 27)
    assert recover_signer(digest, compact) == PAYER.address


def test_high_s_rejected(signed):
    digest, signature = signed
    v, r, s = split_signature(signature)
    malleable = _with_components(signature, r, SECP256K1_N - s, 55 - v)
    with pytest.raises(InvalidSignature, match="malleable"):
        recover_signer(digest, malleable)


@pytest.mark.parametrize(
    "bad",
    [
        "0x",
        "0x1234",
        "not-hex",
        "0x" + "00" * 65,
        "0x" + "11" * 64 + "1d",
    ],
)
def test_malformed_signatures_rejected(signed, bad):
    digest, _ = signed
    with pytest.raises(InvalidSignature):
        verify_signature(digest, bad, PAYER.address)
