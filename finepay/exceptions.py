"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors without importing HTTP
concepts; the handlers registered here translate them into HTTP responses
with a consistent body: {"detail": "...", "error_type": "..."}.

Inside the reconciliation engine these errors never escape: they are turned
into a transaction state change plus an audit event, and the engine returns
a plain success flag.

Exception hierarchy:
    FinePayError (base)
    ├── TransactionNotFoundError     — unknown transaction identifier
    ├── UnauthorizedAccessError      — user touching another user's data
    ├── PaymentInProgressError       — patron already has an unresolved payment
    ├── InvalidTransitionError       — status change not allowed from current state
    ├── RegistrationInProgressError  — registration lock held by another attempt
    ├── FinesUpdatedError            — payable amount no longer matches
    ├── InvalidCredentialsError      — ILS rejected the login
    ├── PatronLoginError             — no stored card could log the patron in
    ├── ILSError                     — ILS unreachable or returned an error
    ├── InvalidSignatureError        — gateway callback failed HMAC check
    └── DuplicateLibraryCardError    — card with this username already stored
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class FinePayError(Exception):
    """Base exception for all FinePay domain errors."""

    status_code = 400
    error_type = "error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class TransactionNotFoundError(FinePayError):
    """Raised when a transaction identifier does not exist."""

    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class UnauthorizedAccessError(FinePayError):
    """Raised when a user attempts to access a resource they don't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class PaymentInProgressError(FinePayError):
    """Raised when a new payment is started while an earlier one is unresolved."""

    status_code = 409
    error_type = "payment_in_progress"

    def __init__(self, cat_username: str):
        self.cat_username = cat_username
        super().__init__(f"A payment is already in progress for patron {cat_username}")


class InvalidTransitionError(FinePayError):
    """
    Raised when a status change is not an allowed edge of the state machine.

    Attributes:
        current: Status the transaction is in.
        requested: Status the caller tried to move it to.
    """

    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, transaction_id: str, current: str, requested: str):
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transaction {transaction_id} cannot move from {current} to {requested}"
        )


class RegistrationInProgressError(FinePayError):
    """Raised when another attempt holds the registration lock for a transaction."""

    status_code = 409
    error_type = "registration_in_progress"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} already being registered")


class FinesUpdatedError(FinePayError):
    """
    Raised when the ILS payable amount disagrees with the amount to pay.

    Attributes:
        expected_amount: Amount the caller wanted to pay (minor units).
        payable_amount: Amount the ILS currently reports (minor units).
    """

    status_code = 409
    error_type = "fines_updated"

    def __init__(self, expected_amount: int, payable_amount: int):
        self.expected_amount = expected_amount
        self.payable_amount = payable_amount
        super().__init__(
            f"Fines updated: expected {expected_amount}, payable {payable_amount}"
        )


class InvalidCredentialsError(FinePayError):
    """Raised when the ILS rejects a login."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid library card number or password")


class PatronLoginError(FinePayError):
    """Raised when no stored credential could log the transaction owner into the ILS."""

    status_code = 502
    error_type = "patron_login_failed"

    def __init__(self, transaction_id: str, cat_username: str):
        self.transaction_id = transaction_id
        self.cat_username = cat_username
        super().__init__(
            f"Could not log in patron {cat_username} for transaction {transaction_id}"
        )


class ILSError(FinePayError):
    """Raised when the ILS is unreachable or answers with an error."""

    status_code = 502
    error_type = "ils_error"


class InvalidSignatureError(FinePayError):
    """Raised when a payment gateway callback fails signature verification."""

    status_code = 403
    error_type = "invalid_signature"

    def __init__(self):
        super().__init__("Invalid payment gateway signature")


class DuplicateLibraryCardError(FinePayError):
    """Raised when adding a library card whose username the user already has."""

    status_code = 409
    error_type = "duplicate_library_card"

    def __init__(self, cat_username: str):
        self.cat_username = cat_username
        super().__init__(f"Library card {cat_username} is already linked")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Every FinePayError subclass carries its own status code and error_type,
    so one handler covers the hierarchy; a few add extra fields.
    """

    @app.exception_handler(FinesUpdatedError)
    async def fines_updated_handler(
        request: Request, exc: FinesUpdatedError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "expected_amount": exc.expected_amount,
                "payable_amount": exc.payable_amount,
            },
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "current_status": exc.current,
                "requested_status": exc.requested,
            },
        )

    @app.exception_handler(FinePayError)
    async def finepay_error_handler(
        request: Request, exc: FinePayError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )
