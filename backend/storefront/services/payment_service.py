# Overview: Payment reconciler; checks instruments against the computed total.

"""
Payment Reconciler

WHY: An order can be paid with several instruments (cash + check, card +
transfer, ...). Before anything is written, the instruments must add up to
the server-computed total within a one-cent tolerance, and the derived
fields (cash change, check tracking) must be computed here rather than
trusted from the client.

DESIGN PRINCIPLES:
- Pure: no database access, no side effects
- Amounts are integer cents, never negative
- Zero-amount instruments are dropped, never persisted
- Any check leaves the order PENDING until it clears
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date

from .errors import InvalidRequestError, PaymentMismatchError
from .money import format_cents


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "CASH"
METHOD_CARD = "CARD"
METHOD_CHECK = "CHECK"
METHOD_TRANSFER = "TRANSFER"
METHOD_OTHER = "OTHER"

VALID_METHODS = [
    METHOD_CASH,
    METHOD_CARD,
    METHOD_CHECK,
    METHOD_TRANSFER,
    METHOD_OTHER,
]


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"

CHECK_STATUS_RECEIVED = "RECEIVED"


@dataclass(frozen=True)
class PaymentInstrument:
    """
    One tender as supplied by the caller.

    amount_cents is None only in the legacy single-tender form, where the
    instrument is taken to cover the whole total.
    """
    method: str
    amount_cents: int | None = None
    cash_given_cents: int | None = None
    check_number: str | None = None
    check_bank_name: str | None = None
    check_date: date | None = None
    reference_number: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ReconciledPayment:
    method: str
    amount_cents: int
    status: str
    cash_given_cents: int | None = None
    cash_change_cents: int | None = None
    check_number: str | None = None
    check_bank_name: str | None = None
    check_date: date | None = None
    check_status: str | None = None
    reference_number: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class PaymentReconciliation:
    payments: list = field(default_factory=list)
    payment_status: str = PAYMENT_STATUS_COMPLETED
    paid_cents: int = 0
    difference_cents: int = 0


def _validate_instrument(index: int, instrument: PaymentInstrument) -> None:
    details = {"payment_index": index, "method": instrument.method}
    if instrument.method not in VALID_METHODS:
        raise InvalidRequestError(
            f"Invalid payment method: {instrument.method}. Must be one of {VALID_METHODS}",
            details=details,
        )
    if instrument.amount_cents is None:
        raise InvalidRequestError("Payment amount is required when paying with several instruments", details=details)
    if instrument.amount_cents < 0:
        raise InvalidRequestError("Payment amount cannot be negative", details=details)
    if instrument.cash_given_cents is not None and instrument.cash_given_cents < 0:
        raise InvalidRequestError("Cash given cannot be negative", details=details)


def _settle_instrument(index: int, instrument: PaymentInstrument) -> ReconciledPayment:
    amount = instrument.amount_cents
    base = ReconciledPayment(
        method=instrument.method,
        amount_cents=amount,
        status=PAYMENT_STATUS_COMPLETED,
        reference_number=instrument.reference_number,
        notes=instrument.notes,
    )

    if instrument.method == METHOD_CASH:
        given = instrument.cash_given_cents
        if given is None:
            return base
        if given < amount:
            raise InvalidRequestError(
                "Cash given is less than the cash amount",
                details={"payment_index": index, "amount_cents": amount, "cash_given_cents": given},
            )
        return replace(base, cash_given_cents=given, cash_change_cents=given - amount)

    if instrument.method == METHOD_CHECK:
        return replace(
            base,
            status=PAYMENT_STATUS_PENDING,
            check_number=instrument.check_number,
            check_bank_name=instrument.check_bank_name,
            check_date=instrument.check_date,
            check_status=CHECK_STATUS_RECEIVED,
        )

    return base


def reconcile_payments(
    instruments: list[PaymentInstrument],
    total_cents: int,
    tolerance_cents: int = 1,
) -> PaymentReconciliation:
    """
    Validate payment instruments against the order total.

    Args:
        instruments: tenders in the order the caller listed them
        total_cents: server-computed order total
        tolerance_cents: allowed absolute difference

    Returns:
        PaymentReconciliation with the instruments to persist and the
        order-level payment status

    Raises:
        InvalidRequestError: unknown method, negative amount, non-cash zero
            amount, cash given below the cash amount
        PaymentMismatchError: abs(total - paid) > tolerance; details carry
            difference_cents (positive means the customer paid too little)
    """
    instruments = list(instruments or [])

    # Legacy single-tender form: one instrument without an amount covers the total
    if len(instruments) == 1 and instruments[0].amount_cents is None:
        instruments = [replace(instruments[0], amount_cents=total_cents)]

    settled = []
    for index, instrument in enumerate(instruments):
        _validate_instrument(index, instrument)
        if instrument.amount_cents == 0:
            if instrument.method != METHOD_CASH and total_cents > 0:
                raise InvalidRequestError(
                    "Non-cash payments must declare a positive amount",
                    details={"payment_index": index, "method": instrument.method},
                )
            # Zero cash is a top-up placeholder; the balance check below decides
            continue
        settled.append(_settle_instrument(index, instrument))

    paid = sum(p.amount_cents for p in settled)
    difference = total_cents - paid
    if abs(difference) > tolerance_cents:
        direction = "short" if difference > 0 else "over"
        raise PaymentMismatchError(
            f"Payments total {format_cents(paid)} but order total is {format_cents(total_cents)} "
            f"({direction} by {format_cents(abs(difference))})",
            details={
                "total_cents": total_cents,
                "paid_cents": paid,
                "difference_cents": difference,
                "tolerance_cents": tolerance_cents,
            },
        )

    has_check = any(p.method == METHOD_CHECK for p in settled)
    return PaymentReconciliation(
        payments=settled,
        payment_status=PAYMENT_STATUS_PENDING if has_check else PAYMENT_STATUS_COMPLETED,
        paid_cents=paid,
        difference_cents=difference,
    )
