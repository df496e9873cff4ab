"""
ECDSA (secp256k1) signature recovery for authorization digests.

Only the canonical, non-malleable form is accepted: ``r`` and ``s`` in
``[1, n-1]`` and ``s <= n/2``. Any signature that fails to parse or
recovers a different address raises ``InvalidSignature``.
"""

from typing import Union

from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_utils import to_checksum_address

from x402_settlement.errors import InvalidSignature

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

SIGNATURE_LENGTH = 65


def _to_bytes(signature: Union[str, bytes]) -> bytes:
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    try:
        return bytes.fromhex(signature.removeprefix("0x"))
    except (AttributeError, ValueError):
        raise InvalidSignature("signature is not valid hex") from None


def split_signature(signature: Union[str, bytes]) -> tuple[int, int, int]:
    """
    Split a 65-byte signature into ``(v, r, s)``.

    ``v`` is returned in Ethereum form (27 or 28); 0 and 1 are accepted.

    Raises:
        InvalidSignature: Wrong length or out-of-range components
    """
    raw = _to_bytes(signature)
    if len(raw) != SIGNATURE_LENGTH:
        raise InvalidSignature(f"signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")

    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v in (0, 1):
        v += 27

    if v not in (27, 28):
        raise InvalidSignature(f"invalid recovery id v={v}")
    if not 0 < r < SECP256K1_N:
        raise InvalidSignature("r out of range")
    if not 0 < s <= SECP256K1_HALF_N:
        # High-s signatures are malleable twins of a valid low-s signature
        raise InvalidSignature("s out of range (malleable signature)")
    return v, r, s


def recover_signer(digest: bytes, signature: Union[str, bytes]) -> str:
    """
    Recover the checksummed signer address of ``digest``.

    Raises:
        InvalidSignature: If the signature is malformed or unrecoverable
    """
    v, r, s = split_signature(signature)
    try:
        public_key = keys.Signature(vrs=(v - 27, r, s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValueError) as e:
        raise InvalidSignature(f"signature recovery failed: {e}") from e
    return public_key.to_checksum_address()


def verify_signature(digest: bytes, signature: Union[str, bytes], claimed_signer: str) -> str:
    """
    Check that ``signature`` over ``digest`` was produced by ``claimed_signer``.

    Returns:
        The recovered (checksummed) signer

    Raises:
        InvalidSignature: If recovery fails or yields another address
    """
    recovered = recover_signer(digest, signature)
    if recovered != to_checksum_address(claimed_signer):
        raise InvalidSignature("signer does not match authorization.from")
    return recovered
