"""
Stateless validity checks.

Each check raises its own GateError. Callers pass in the state that governs
at the moment of evaluation (block timestamp, whitelist flag, pause flag),
never a value captured at signing time.
"""

from x402_settlement.errors import ContractPaused, Expired, NotYetValid, TokenNotWhitelisted
from x402_settlement.models import Authorization


def check_time_window(authorization: Authorization, now: int) -> None:
    """
    Both bounds are inclusive: ``validAfter <= now <= validBefore`` is valid.

    Raises:
        NotYetValid: ``now < validAfter``
        Expired: ``now > validBefore``
    """
    if now < authorization.valid_after:
        raise NotYetValid(f"authorization valid after {authorization.valid_after}, now {now}")
    if now > authorization.valid_before:
        raise Expired(f"authorization expired at {authorization.valid_before}, now {now}")


def check_whitelisted(token: str, enabled: bool) -> None:
    if not enabled:
        raise TokenNotWhitelisted(f"token {token} is not whitelisted")


def check_not_paused(paused: bool) -> None:
    if paused:
        raise ContractPaused()
