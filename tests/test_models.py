import pytest
from pydantic import ValidationError

from x402_settlement.models import (
    UINT256_MAX,
    Authorization,
    FacilitatorRequest,
    SettleResult,
    caip2_network,
    checksum,
)
from x402_settlement.errors import ErrorReason

from conftest import PAYEE, PAYER

NONCE = "0x" + "ab" * 32


def _wire(**overrides):
    fields = {
        "from": PAYER.address.lower(),
        "to": PAYEE,
        "value": "1000000",
        "validAfter": "0",
        "validBefore": 1_700_003_600,
        "nonce": NONCE,
    }
    fields.update(overrides)
    return fields


def test_authorization_from_wire():
    auth = Authorization.model_validate(_wire())

    assert auth.from_address == PAYER.address
    assert auth.value == 1_000_000
    assert auth.valid_after == 0
    assert auth.valid_before == 1_700_003_600
    assert auth.nonce_bytes == bytes.fromhex("ab" * 32)


def test_authorization_serializes_camel_case_decimal_strings():
    dumped = Authorization.model_validate(_wire()).model_dump(by_alias=True, mode="json")
    assert dumped == {
        "from": PAYER.address,
        "to": PAYEE,
        "value": "1000000",
        "validAfter": "0",
        "validBefore": "1700003600",
        "nonce": NONCE,
    }


def test_nonce_is_normalized():
    assert Authorization.model_validate(_wire(nonce=NONCE.upper().replace("0X", "0x"))).nonce == NONCE
    assert Authorization.model_validate(_wire(nonce=bytes.fromhex("ab" * 32))).nonce == NONCE


@pytest.mark.parametrize(
    "overrides",
    [
        {"nonce": "0x1234"},
        {"nonce": "0x" + "zz" * 32},
        {"value": 0},
        {"value": UINT256_MAX + 1},
        {"from": "0x1234"},
        {"to": "not-an-address"},
        {"validAfter": 10, "validBefore": 10},
        {"validAfter": 11, "validBefore": 10},
    ],
)
def test_invalid_authorization_rejected(overrides):
    with pytest.raises(ValidationError):
        Authorization.model_validate(_wire(**overrides))


def test_authorization_is_immutable():
    auth = Authorization.model_validate(_wire())
    with pytest.raises(ValidationError):
        auth.value = 1


def test_checksum():
    assert checksum(PAYER.address.lower()) == PAYER.address
    with pytest.raises(ValueError):
        checksum("0x123")


def test_caip2_network():
    assert caip2_network(8453) == "eip155:8453"


def test_facilitator_request_from_wire(make_payment):
    payload, requirements = make_payment()
    request = FacilitatorRequest.model_validate(
        {
            "x402Version": 2,
            "paymentPayload": payload.model_dump(by_alias=True, mode="json"),
            "paymentRequirements": requirements.model_dump(by_alias=True, mode="json"),
        }
    )
    assert request.payment_payload == payload
    assert request.payment_requirements == requirements
    assert request.payment_payload.payer == PAYER.address


def test_settle_result_reason_on_the_wire():
    result = SettleResult(success=False, error_reason=ErrorReason.CONFIRMATION_TIMEOUT, transaction="0xab")
    dumped = result.model_dump(by_alias=True, mode="json")
    assert dumped["errorReason"] == "confirmation_timeout"
    assert SettleResult.model_validate(dumped).error_reason is ErrorReason.CONFIRMATION_TIMEOUT
