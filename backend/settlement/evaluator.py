"""
Settlement evaluator: pure predicates over a charge and its payment ledger.
"""

from typing import List, Optional

from models import ServiceCharge, Payment, PaymentStatus, User, UserRole
from settlement.financial_precision import sum_minor_units

# Statuses that count toward settlement
SETTLED_PAYMENT_STATUSES = {PaymentStatus.COMPLETED.value, "success"}


def is_settled_payment(payment: Payment) -> bool:
    return payment.status in SETTLED_PAYMENT_STATUSES


def completed_total(charge: ServiceCharge) -> int:
    """Sum of completed payment amounts, regardless of payer."""
    return sum_minor_units(p.amount for p in charge.payments if is_settled_payment(p))


def is_fully_paid(charge: ServiceCharge) -> bool:
    return completed_total(charge) >= charge.amount


def outstanding_amount(charge: ServiceCharge) -> int:
    return max(charge.amount - completed_total(charge), 0)


def payers(charge: ServiceCharge) -> List[str]:
    """Users with at least one completed payment, in ledger order."""
    result = []
    for payment in charge.payments:
        if is_settled_payment(payment) and payment.paid_by not in result:
            result.append(payment.paid_by)
    return result


def find_payment(charge: ServiceCharge, reference: str) -> Optional[Payment]:
    for payment in charge.payments:
        if payment.reference == reference:
            return payment
    return None


def can_be_modified_by(charge: ServiceCharge, user: User) -> bool:
    return user.role == UserRole.ADMIN.value or user.user_id == charge.created_by
