"""
Pytest configuration and fixtures for the settlement backend tests.

The settlement service runs against an in-memory charge repository that
honours the same conditional-update contract as MongoChargeRepository,
scripted gateway clients and a permission checker backed by a dict of
users. Audit and notification use the real services over mocks.
"""
import asyncio
import pathlib
import sys
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from audit_service import AuditService
from models import (
    ServiceCharge,
    ServiceChargeCreate,
    StatusHistoryEntry,
    Payment,
    ChargeStatus,
    PaymentStatus,
    User,
    UserRole,
)
from notification_service import PaymentNotifier
from permissions import PermissionChecker
from settlement.errors import NotFoundError, ConcurrentModificationError
from settlement.evaluator import find_payment
from settlement.payment_providers import (
    PaymentProviderClient,
    InitializationResult,
    VerificationResult,
    ProviderRegistry,
)
from settlement.settlement_service import SettlementService
from settlement.webhook_validation import default_validators

from tests.helpers.webhook_payloads import WEBHOOK_SECRETS


APP_URL = "https://estate.greenfield.com"


# =============================================================================
# TEST DOUBLES
# =============================================================================

class InMemoryChargeRepository:
    """
    Dict-backed charge store with the same conditional semantics as
    MongoChargeRepository: every ledger or status change either applies
    atomically and returns the charge, or returns None.
    """

    def __init__(self):
        self.charges: Dict[str, ServiceCharge] = {}
        self.indexes_created = False

    def _touch(self, charge: ServiceCharge):
        charge.updated_at = max(datetime.utcnow(), charge.updated_at + timedelta(microseconds=1))

    def _find_reference(self, reference: str) -> Optional[ServiceCharge]:
        for charge in self.charges.values():
            if find_payment(charge, reference):
                return charge
        return None

    async def insert(self, charge: ServiceCharge) -> ServiceCharge:
        charge.charge_id = str(ObjectId())
        self.charges[charge.charge_id] = charge.model_copy(deep=True)
        return charge

    async def load(self, charge_id: str) -> ServiceCharge:
        charge = self.charges.get(charge_id)
        if charge is None:
            raise NotFoundError("Service charge", charge_id)
        return charge.model_copy(deep=True)

    async def save(self, charge: ServiceCharge) -> None:
        stored = self.charges.get(charge.charge_id)
        if stored is None:
            raise NotFoundError("Service charge", charge.charge_id)
        if stored.updated_at != charge.updated_at:
            raise ConcurrentModificationError(charge.charge_id)
        copy = charge.model_copy(deep=True)
        self._touch(copy)
        self.charges[charge.charge_id] = copy

    async def find_by_payment_reference(self, reference: str) -> ServiceCharge:
        charge = self._find_reference(reference)
        if charge is None:
            raise NotFoundError("Payment", reference)
        return charge.model_copy(deep=True)

    async def append_payment(self, charge_id: str, payment: Payment) -> Optional[ServiceCharge]:
        charge = self.charges.get(charge_id)
        if (
            charge is None
            or charge.status != ChargeStatus.ACTIVE.value
            or payment.paid_by in charge.paid_by
            or find_payment(charge, payment.reference)
        ):
            return None
        charge.payments.append(payment.model_copy(deep=True))
        self._touch(charge)
        return charge.model_copy(deep=True)

    async def remove_pending_payment(self, charge_id: str, reference: str) -> bool:
        charge = self.charges.get(charge_id)
        payment = find_payment(charge, reference) if charge else None
        if payment is None or payment.status != PaymentStatus.PENDING.value:
            return False
        charge.payments.remove(payment)
        self._touch(charge)
        return True

    async def set_provider_reference(self, reference: str, provider_reference: str) -> None:
        charge = self._find_reference(reference)
        if charge:
            find_payment(charge, reference).provider_reference = provider_reference

    async def complete_payment(self, reference, payer_id, paid_at) -> Optional[ServiceCharge]:
        charge = self._find_reference(reference)
        payment = find_payment(charge, reference) if charge else None
        if payment is None or payment.status != PaymentStatus.PENDING.value:
            return None
        payment.status = PaymentStatus.COMPLETED.value
        payment.paid_at = paid_at
        if payer_id not in charge.paid_by:
            charge.paid_by.append(payer_id)
        self._touch(charge)
        return charge.model_copy(deep=True)

    async def fail_payment(self, reference: str) -> Optional[ServiceCharge]:
        charge = self._find_reference(reference)
        payment = find_payment(charge, reference) if charge else None
        if payment is None or payment.status != PaymentStatus.PENDING.value:
            return None
        payment.status = PaymentStatus.FAILED.value
        self._touch(charge)
        return charge.model_copy(deep=True)

    async def transition_status(self, charge_id, from_statuses, to_status, history_entry, admin_override):
        charge = self.charges.get(charge_id)
        if charge is None or charge.status not in from_statuses:
            return None
        charge.status = to_status
        charge.admin_override = admin_override
        charge.status_history.append(StatusHistoryEntry(**history_entry))
        self._touch(charge)
        return charge.model_copy(deep=True)

    async def create_indexes(self):
        self.indexes_created = True


class ScriptedProvider(PaymentProviderClient):
    """Gateway double answering with pre-set results."""

    def __init__(self, name: str):
        self.name = name
        self.verification = VerificationResult(succeeded=True)
        self.init_error: Optional[Exception] = None
        self.initialized: List = []
        self.verified: List[str] = []

    async def initialize(self, details):
        self.initialized.append(details)
        if self.init_error is not None:
            raise self.init_error
        return InitializationResult(
            redirect_url=f"https://checkout.{self.name}.com/pay/{details.reference}",
            provider_reference=f"{self.name}_{details.reference}"
        )

    async def verify(self, reference, provider_reference=None):
        self.verified.append(reference)
        # Yield so concurrent callers interleave between read and write
        await asyncio.sleep(0)
        return self.verification


class InMemoryPermissionChecker(PermissionChecker):
    def __init__(self, users: Dict[str, User]):
        super().__init__(db=MagicMock())
        self.users = users

    async def get_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user


class RecordingNotifier(PaymentNotifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def send_payment_success(self, email, details):
        self.sent.append(("success", email, details))
        return True

    async def send_payment_failure(self, email, details):
        self.sent.append(("failure", email, details))
        return True

    def of_kind(self, kind: str) -> List[tuple]:
        return [entry for entry in self.sent if entry[0] == kind]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def users() -> Dict[str, User]:
    people = [
        User(user_id=str(ObjectId()), name="Amaka Admin", email="admin@greenfield.com",
             role=UserRole.ADMIN),
        User(user_id=str(ObjectId()), name="Emeka Manager", email="manager@greenfield.com",
             role=UserRole.ESTATE_ADMIN),
        User(user_id=str(ObjectId()), name="Ada Resident", email="ada@greenfield.com"),
        User(user_id=str(ObjectId()), name="Bayo Resident", email="bayo@greenfield.com"),
        User(user_id=str(ObjectId()), name="Chidi Outsider", email="chidi@greenfield.com"),
    ]
    return {user.user_id: user for user in people}


@pytest.fixture
def admin(users) -> User:
    return list(users.values())[0]


@pytest.fixture
def manager(users) -> User:
    return list(users.values())[1]


@pytest.fixture
def resident_a(users) -> User:
    return list(users.values())[2]


@pytest.fixture
def resident_b(users) -> User:
    return list(users.values())[3]


@pytest.fixture
def outsider(users) -> User:
    return list(users.values())[4]


@pytest.fixture
def repository() -> InMemoryChargeRepository:
    return InMemoryChargeRepository()


@pytest.fixture
def gateways() -> Dict[str, ScriptedProvider]:
    return {name: ScriptedProvider(name) for name in ("flutterwave", "monnify", "stripe")}


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit_db():
    db = MagicMock()
    db.audit_logs.insert_one = AsyncMock()
    return db


@pytest.fixture
def service(repository, gateways, users, notifier, audit_db) -> SettlementService:
    registry = ProviderRegistry()
    for client in gateways.values():
        registry.register(client)
    return SettlementService(
        repository=repository,
        providers=registry,
        permissions=InMemoryPermissionChecker(users),
        audit=AuditService(audit_db),
        notifier=notifier,
        validators=default_validators(),
        webhook_secrets=WEBHOOK_SECRETS,
        app_url=APP_URL,
    )


@pytest.fixture
def charge_factory(service, manager, resident_a, resident_b):
    """Async factory: await charge_factory(amount=10000)."""

    async def create(amount: int = 10000, affected_users=None, **kwargs) -> ServiceCharge:
        payload = ServiceChargeCreate(
            title=kwargs.pop("title", "Q3 Estate Maintenance"),
            description=kwargs.pop("description", "Quarterly maintenance levy"),
            amount=amount,
            affected_users=affected_users or [resident_a.user_id, resident_b.user_id],
            **kwargs
        )
        return await service.create_charge(payload, manager.user_id)

    return create
