"""
EIP-712 codec for transfer authorizations.

The digest computed here is the exact value the execution gate recovers
signatures against, and it must agree byte-for-byte with what a wallet
signs through ``eth_account.messages.encode_typed_data``:

    digest = keccak256(0x19 0x01 || domainSeparator || structHash)

    domainSeparator = keccak256(abi.encode(
        EIP712_DOMAIN_TYPEHASH, keccak(name), keccak(version), chainId, verifyingContract))

    structHash = keccak256(abi.encode(
        AUTHORIZATION_TYPEHASH, from, to, value, validAfter, validBefore, nonce))

Example:
    >>> from x402_settlement.codec import authorization_digest, sign_authorization
    >>>
    >>> signature = sign_authorization(auth, domain, private_key)
    >>> digest = authorization_digest(auth, domain)
"""

import secrets
from typing import Any

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from x402_settlement.models import Authorization, Domain

# ============================================================
# Type strings and hashes
# ============================================================

EIP712_DOMAIN_TYPE = (
    "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)

AUTHORIZATION_TYPE = (
    "Authorization(address from,address to,uint256 value,"
    "uint256 validAfter,uint256 validBefore,bytes32 nonce)"
)

EIP712_DOMAIN_TYPEHASH = bytes(Web3.keccak(text=EIP712_DOMAIN_TYPE))
AUTHORIZATION_TYPEHASH = bytes(Web3.keccak(text=AUTHORIZATION_TYPE))

# Field order is part of the signature; do not reorder.
EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

AUTHORIZATION_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


def domain_separator(domain: Domain) -> bytes:
    """Hash of the EIP-712 domain."""
    encoded = encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            EIP712_DOMAIN_TYPEHASH,
            bytes(Web3.keccak(text=domain.name)),
            bytes(Web3.keccak(text=domain.version)),
            domain.chain_id,
            domain.verifying_contract,
        ],
    )
    return bytes(Web3.keccak(encoded))


def struct_hash(authorization: Authorization) -> bytes:
    """Hash of the Authorization struct, prefixed by its type hash."""
    encoded = encode(
        ["bytes32", "address", "address", "uint256", "uint256", "uint256", "bytes32"],
        [
            AUTHORIZATION_TYPEHASH,
            authorization.from_address,
            authorization.to,
            authorization.value,
            authorization.valid_after,
            authorization.valid_before,
            authorization.nonce_bytes,
        ],
    )
    return bytes(Web3.keccak(encoded))


def authorization_digest(authorization: Authorization, domain: Domain) -> bytes:
    """
    Final 32-byte digest a payer signs.

    Args:
        authorization: The transfer authorization
        domain: Domain of the gate that will execute it

    Returns:
        keccak256 digest under the EIP-191 ``0x19 0x01`` prefix
    """
    return bytes(
        Web3.keccak(b"\x19\x01" + domain_separator(domain) + struct_hash(authorization))
    )


def build_typed_data(authorization: Authorization, domain: Domain) -> dict[str, Any]:
    """
    Full EIP-712 typed-data document for wallets (``eth_signTypedData_v4``).

    ``nonce`` stays a hex string here; JSON-RPC wallets expect that.
    """
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            "Authorization": AUTHORIZATION_FIELDS,
        },
        "primaryType": "Authorization",
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": domain.chain_id,
            "verifyingContract": domain.verifying_contract,
        },
        "message": {
            "from": authorization.from_address,
            "to": authorization.to,
            "value": authorization.value,
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": authorization.nonce,
        },
    }


def sign_authorization(authorization: Authorization, domain: Domain, private_key: str) -> str:
    """
    Sign an authorization with a local private key.

    Args:
        authorization: Authorization to sign; ``from`` must be the key's address
        domain: Gate domain
        private_key: Hex-encoded private key

    Returns:
        0x-prefixed 65-byte signature (r || s || v)
    """
    typed = build_typed_data(authorization, domain)
    # eth_account >= 0.10.0 requires bytes, not hex strings, for bytes32 fields
    message = dict(typed["message"], nonce=authorization.nonce_bytes)
    signable = encode_typed_data(
        domain_data=typed["domain"],
        message_types={"Authorization": AUTHORIZATION_FIELDS},
        message_data=message,
    )
    signed = Account.sign_message(signable, private_key=private_key)
    sig_hex = signed.signature.hex()
    # HexBytes.hex() may include 0x prefix in newer versions
    return sig_hex if sig_hex.startswith("0x") else "0x" + sig_hex


def random_nonce() -> str:
    """Fresh 32-byte authorization nonce."""
    return "0x" + secrets.token_hex(32)
