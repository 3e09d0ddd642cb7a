"""
errors.py — Domain exception taxonomy for phone_server.

Every error raised by business logic subclasses PhoneServerError and declares:
  - kind         one of ErrorKind: decides session-failing behaviour (sessions/policy.py)
  - status_code  HTTP status used by the handler in main.py
  - code         stable machine-readable error code
  - message      user-visible text (never an internal exception string)

No HTTPException anywhere in services: the HTTP layer maps these in main.py.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    input = "input"
    not_found = "not_found"
    state_conflict = "state_conflict"
    transient = "transient"
    rejected = "rejected"
    verification_failure = "verification_failure"
    payment = "payment"
    external = "external"
    internal = "internal"


# Messages kept verbatim from the deployed service: clients match on them.
OTP_NOT_FOUND = "OTP not found"
OTP_DOES_NOT_MATCH = "OTP does not match"
TOO_MANY_ATTEMPTS_COUNTRY = "Too many recent attempts from country"
TOO_MANY_ATTEMPTS = "Too many recent attempts"


class PhoneServerError(Exception):
    kind: ErrorKind = ErrorKind.internal
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unknown error occurred"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Input errors: rejected synchronously, no mutation
# ---------------------------------------------------------------------------

class InvalidInput(PhoneServerError):
    kind = ErrorKind.input
    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Invalid request"


class UnsupportedChain(InvalidInput):
    code = "UNSUPPORTED_CHAIN"

    def __init__(self, chain_id: Any, supported: list[int]) -> None:
        super().__init__(
            f"Missing chainId. chainId must be one of {', '.join(str(c) for c in supported)}",
            chain_id=chain_id,
        )


class InvalidNullifier(InvalidInput):
    code = "INVALID_NULLIFIER"
    default_message = "Nullifier must be an integer"


class Unauthorized(PhoneServerError):
    kind = ErrorKind.input
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Invalid API key."


# ---------------------------------------------------------------------------
# Not-found errors
# ---------------------------------------------------------------------------

class NotFound(PhoneServerError):
    kind = ErrorKind.not_found
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"
    default_message = "Session not found"


class VoucherNotFound(NotFound):
    code = "VOUCHER_NOT_FOUND"
    default_message = "voucher is invalid"


class PhoneNumberNotFound(NotFound):
    code = "NUMBER_NOT_FOUND"
    default_message = "Number not found"


# ---------------------------------------------------------------------------
# State conflicts: carry actual and expected status
# ---------------------------------------------------------------------------

class StateConflict(PhoneServerError):
    kind = ErrorKind.state_conflict
    status_code = 409
    code = "CONFLICT"
    default_message = "Request conflicts with current state"


class SessionStateConflict(StateConflict):
    code = "SESSION_STATE_CONFLICT"

    def __init__(self, actual: str, expected: Any) -> None:
        if isinstance(expected, (list, tuple, set, frozenset)):
            expected_text = " or ".join(sorted(str(e) for e in expected))
        else:
            expected_text = str(expected)
        self.actual = str(actual)
        self.expected = expected_text
        super().__init__(
            f"Session status is '{self.actual}'. Expected '{self.expected}'",
            actual=self.actual,
            expected=self.expected,
        )


class SessionAlreadyPaid(StateConflict):
    code = "SESSION_ALREADY_PAID"
    default_message = "Session is already associated with a transaction"


class MaxAttemptsReached(StateConflict):
    code = "MAX_ATTEMPTS_REACHED"
    default_message = "Session has reached max attempts"


class VoucherAlreadyRedeemed(StateConflict):
    code = "VOUCHER_ALREADY_REDEEMED"
    default_message = "voucher is already redeemed"


class AlreadyRefunded(StateConflict):
    code = "ALREADY_REFUNDED"
    default_message = "Session has already been refunded."


class OtpAlreadyConsumed(StateConflict):
    code = "OTP_ALREADY_CONSUMED"
    default_message = "OTP was already used by another request"


class RefundInProgress(StateConflict):
    code = "REFUND_IN_PROGRESS"
    default_message = "Refund already in progress"


# ---------------------------------------------------------------------------
# Transient / rate-limit errors: never fail a session
# ---------------------------------------------------------------------------

class TransientError(PhoneServerError):
    kind = ErrorKind.transient
    status_code = 429
    code = "RATE_LIMITED"
    default_message = TOO_MANY_ATTEMPTS


class TooManyAttemptsForCountry(TransientError):
    code = "TOO_MANY_ATTEMPTS_COUNTRY"

    def __init__(self, country_code: str) -> None:
        super().__init__(f"{TOO_MANY_ATTEMPTS_COUNTRY} {country_code}", country=country_code)


class IpRateLimited(TransientError):
    code = "TOO_MANY_ATTEMPTS"
    default_message = TOO_MANY_ATTEMPTS


class DeletionRateLimited(TransientError):
    code = "RATE_LIMITED"
    default_message = "Rate limit exceeded"


class TransactionNotConfirmed(TransientError):
    status_code = 400
    code = "TX_NOT_CONFIRMED"
    default_message = "Transaction has not been confirmed yet."


# ---------------------------------------------------------------------------
# Rejections: 400-class, the session stays usable
# ---------------------------------------------------------------------------

class Rejected(PhoneServerError):
    kind = ErrorKind.rejected
    status_code = 400
    code = "REJECTED"
    default_message = "Request rejected"


class PhoneNumberUnsafe(Rejected):
    code = "PHONE_NUMBER_UNSAFE"
    default_message = "Phone number could not be determined to belong to a unique human"


class NullifierBoundToOtherNumber(Rejected):
    code = "NULLIFIER_BOUND"
    default_message = "Nullifier is already bound to a different phone number"


# ---------------------------------------------------------------------------
# Verification failures: fail the session
# ---------------------------------------------------------------------------

class VerificationFailure(PhoneServerError):
    kind = ErrorKind.verification_failure
    status_code = 400
    code = "VERIFICATION_FAILED"
    default_message = "Could not verify number with given code"


class OtpNotFound(VerificationFailure):
    code = "OTP_NOT_FOUND"
    default_message = OTP_NOT_FOUND


class OtpMismatch(VerificationFailure):
    code = "OTP_DOES_NOT_MATCH"
    default_message = OTP_DOES_NOT_MATCH


class AlreadyRegistered(VerificationFailure):
    code = "ALREADY_REGISTERED"
    default_message = "Number has been registered already!"


# ---------------------------------------------------------------------------
# Payment validation errors
# ---------------------------------------------------------------------------

class PaymentInvalid(PhoneServerError):
    kind = ErrorKind.payment
    status_code = 400
    code = "PAYMENT_INVALID"
    default_message = "Invalid payment"


class TransactionNotFound(PaymentInvalid):
    code = "TX_NOT_FOUND"


class InvalidRecipient(PaymentInvalid):
    code = "TX_INVALID_RECIPIENT"


class InsufficientPayment(PaymentInvalid):
    code = "TX_INSUFFICIENT_AMOUNT"


class TransactionAlreadyUsed(PaymentInvalid):
    code = "TX_ALREADY_USED"
    default_message = "Transaction has already been used to pay for a session"


class InvalidTransactionData(PaymentInvalid):
    code = "TX_INVALID_DATA"
    default_message = "Invalid transaction data"


class OrderNotAttached(PaymentInvalid):
    code = "ORDER_NOT_ATTACHED"


class PayPalOrderNotCompleted(PaymentInvalid):
    code = "ORDER_NOT_COMPLETED"


# ---------------------------------------------------------------------------
# External dependency errors: surfaced as 5xx
# ---------------------------------------------------------------------------

class ExternalServiceError(PhoneServerError):
    kind = ErrorKind.external
    status_code = 502
    code = "UPSTREAM_ERROR"
    default_message = "An upstream service failed"


class FraudProviderError(ExternalServiceError):
    code = "FRAUD_PROVIDER_ERROR"
    default_message = "Received invalid response from ipqualityscore"


class ChainRpcError(ExternalServiceError):
    code = "CHAIN_RPC_ERROR"


class PriceFeedError(ExternalServiceError):
    code = "PRICE_FEED_ERROR"


class PayPalError(ExternalServiceError):
    code = "PAYPAL_ERROR"


class RefundWalletUnderfunded(ExternalServiceError):
    status_code = 500
    code = "REFUND_WALLET_UNDERFUNDED"
    default_message = "Wallet does not have enough funds to refund. Please contact support."


class RefundFailed(ExternalServiceError):
    status_code = 500
    code = "REFUND_FAILED"
    default_message = "Error refunding payment"
