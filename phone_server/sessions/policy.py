"""
sessions/policy.py — Verification options and the error → session-failure table.

VerificationPolicy replaces the historical getCredentials v4/v5/v6 endpoints:
one state machine, three named presets.

FAILS_SESSION decides, by error kind, whether an error raised while verifying
moves the session IN_PROGRESS → VERIFICATION_FAILED. It covers every ErrorKind;
anything that is not a PhoneServerError is treated as internal and fails.
"""
from dataclasses import dataclass, replace
from typing import Optional

from phone_server.errors import ErrorKind, PhoneServerError


@dataclass(frozen=True)
class VerificationPolicy:
    name: str
    nullifier_grace_days: int = 0
    registration_recency_months: Optional[int] = None   # None = ever registered
    sybil_resistance_enabled: bool = True
    require_nullifier: bool = False
    exclude_grace_window_registrations: bool = False


V4 = VerificationPolicy(name="v4")
V5 = VerificationPolicy(name="v5", registration_recency_months=11, require_nullifier=True)
V6 = VerificationPolicy(
    name="v6",
    nullifier_grace_days=5,
    registration_recency_months=11,
    require_nullifier=True,
    exclude_grace_window_registrations=True,
)

PRESETS: dict[str, VerificationPolicy] = {p.name: p for p in (V4, V5, V6)}


def policy_for(
    version: str,
    sybil_resistance_enabled: bool = True,
    registration_recency_months: Optional[int] = None,
) -> Optional[VerificationPolicy]:
    """
    Preset by endpoint version, with deployment overrides applied.
    registration_recency_months overrides the preset only where the preset
    uses a window (v4 stays "ever registered").
    """
    preset = PRESETS.get(version)
    if preset is None:
        return None
    if registration_recency_months is not None and preset.registration_recency_months is not None:
        preset = replace(preset, registration_recency_months=registration_recency_months)
    return replace(preset, sybil_resistance_enabled=sybil_resistance_enabled)


# ---------------------------------------------------------------------------
# Error → transition table
# ---------------------------------------------------------------------------
FAILS_SESSION: dict[ErrorKind, bool] = {
    ErrorKind.input: False,
    ErrorKind.not_found: False,
    ErrorKind.state_conflict: False,
    ErrorKind.transient: False,
    ErrorKind.rejected: False,
    ErrorKind.verification_failure: True,
    ErrorKind.payment: False,
    ErrorKind.external: True,
    ErrorKind.internal: True,
}


def session_fails_on(exc: BaseException) -> bool:
    if isinstance(exc, PhoneServerError):
        return FAILS_SESSION[exc.kind]
    return True


def failure_reason(exc: BaseException) -> str:
    """Stored on the session; never leaks internal exception text."""
    if isinstance(exc, PhoneServerError):
        return exc.message
    return "An unknown error occurred"
