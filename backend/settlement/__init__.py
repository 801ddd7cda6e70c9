"""
Service Charge Settlement Core
"""
from .errors import (
    SettlementError,
    ValidationError,
    NotFoundError,
    AlreadyPaidError,
    UnauthorizedError,
    InvalidSignatureError,
    ProviderError,
    ConcurrentModificationError,
    InvalidTransitionError
)

from .financial_precision import (
    to_decimal,
    to_minor_units,
    from_minor_units,
    validate_positive,
    format_amount
)

from .state_machine import (
    StateMachine,
    Transition,
    build_service_charge_machine
)

from .evaluator import (
    completed_total,
    is_fully_paid,
    outstanding_amount,
    can_be_modified_by
)

__all__ = [
    # Errors
    'SettlementError',
    'ValidationError',
    'NotFoundError',
    'AlreadyPaidError',
    'UnauthorizedError',
    'InvalidSignatureError',
    'ProviderError',
    'ConcurrentModificationError',
    'InvalidTransitionError',
    # Money
    'to_decimal',
    'to_minor_units',
    'from_minor_units',
    'validate_positive',
    'format_amount',
    # Lifecycle
    'StateMachine',
    'Transition',
    'build_service_charge_machine',
    # Evaluator
    'completed_total',
    'is_fully_paid',
    'outstanding_amount',
    'can_be_modified_by',
]
