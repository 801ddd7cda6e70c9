"""
SERVICE CHARGE SETTLEMENT SERVICE

Implements the charge lifecycle and payment reconciliation:
1. Charge creation with input validation
2. Payment initialization (pending ledger entry + gateway checkout)
3. Pull verification and push webhooks, both idempotent per reference
4. Settlement: a charge is paid once completed payments cover its amount
5. Admin overrides (mark paid / unpaid), cancellation and reopening

Every payment transition is a compare-and-swap in the repository; the
caller that wins the pending -> completed swap is the only one that
settles the charge and sends the notification. Replays, concurrent
verifications and webhook retries observe a non-pending payment and
return without side effects.
"""

from datetime import datetime
from typing import Optional, Dict
import logging
import secrets
import string

from models import (
    ServiceCharge,
    ServiceChargeCreate,
    ServiceChargeUpdate,
    Payment,
    ChargeStatus,
    ChargeType,
    PaymentStatus,
    PaymentInitResult,
    VerificationOutcome,
    WebhookOutcome,
    SettlementSummary,
    User,
)
from audit_service import AuditService
from notification_service import PaymentNotifier, PaymentEmailDetails
from permissions import PermissionChecker
from settlement.errors import (
    AlreadyPaidError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    UnauthorizedError,
    ValidationError,
)
from settlement.evaluator import (
    completed_total,
    find_payment,
    is_fully_paid,
    outstanding_amount,
    payers,
    can_be_modified_by,
)
from settlement.financial_precision import validate_positive
from settlement.payment_providers import PaymentDetails, ProviderRegistry
from settlement.state_machine import build_service_charge_machine
from settlement.webhook_validation import (
    WebhookValidator,
    parse_webhook_event,
    OUTCOME_IGNORED,
)

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_letters + string.digits + "_-"
REFERENCE_LENGTH = 21

# Statuses the ledger may settle into paid
SETTLEABLE_STATUSES = [ChargeStatus.ACTIVE.value, ChargeStatus.UNPAID.value]


def generate_reference(size: int = REFERENCE_LENGTH) -> str:
    """URL-safe random payment reference."""
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(size))


class SettlementService:
    """
    Service-charge settlement operations.

    Collaborators are injected: a charge repository (MongoChargeRepository
    in production), the provider registry, webhook validators with their
    secrets, the permission checker, the audit service and a notifier.
    """

    def __init__(
        self,
        repository,
        providers: ProviderRegistry,
        permissions: PermissionChecker,
        audit: AuditService,
        notifier: PaymentNotifier,
        validators: Dict[str, WebhookValidator],
        webhook_secrets: Dict[str, str],
        app_url: str,
        default_currency: str = "NGN"
    ):
        self.repository = repository
        self.providers = providers
        self.permissions = permissions
        self.audit = audit
        self.notifier = notifier
        self.validators = validators
        self.webhook_secrets = webhook_secrets
        self.app_url = app_url.rstrip("/")
        self.default_currency = default_currency
        self.machine = build_service_charge_machine()

    # =========================================================================
    # CHARGE LIFECYCLE
    # =========================================================================

    async def create_charge(self, payload: ServiceChargeCreate, created_by: str) -> ServiceCharge:
        """
        Create an active charge with an empty ledger.

        Annual charges recur, so they need a due date.
        """
        actor = await self.permissions.get_user(created_by)
        self.permissions.check_charge_manager(actor)

        validate_positive(payload.amount, "amount")
        if not payload.affected_users:
            raise ValidationError("At least one affected user is required", field="affected_users")
        if payload.type == ChargeType.ANNUAL.value and payload.due_date is None:
            raise ValidationError("Annual service charges require a due date", field="due_date")

        charge = ServiceCharge(
            title=payload.title.strip(),
            description=payload.description.strip(),
            amount=payload.amount,
            currency=payload.currency or self.default_currency,
            type=payload.type,
            category=payload.category,
            due_date=payload.due_date,
            estate_id=payload.estate_id or actor.estate_id,
            created_by=actor.user_id,
            affected_users=payload.affected_users,
            status=ChargeStatus.ACTIVE,
        )
        charge = await self.repository.insert(charge)

        await self.audit.log_action(
            entity_type="SERVICE_CHARGE",
            entity_id=charge.charge_id,
            action_type="CREATE",
            user_id=actor.user_id,
            estate_id=charge.estate_id,
            new_value={"amount": charge.amount, "affected_users": charge.affected_users}
        )
        logger.info(f"[SETTLEMENT] Created service charge {charge.charge_id} for {charge.amount}")
        return charge

    async def get_charge(self, charge_id: str) -> ServiceCharge:
        return await self.repository.load(charge_id)

    async def settlement_summary(self, charge_id: str) -> SettlementSummary:
        charge = await self.repository.load(charge_id)
        return SettlementSummary(
            charge_id=charge.charge_id,
            amount=charge.amount,
            completed_total=completed_total(charge),
            outstanding=outstanding_amount(charge),
            fully_paid=is_fully_paid(charge),
            payers=payers(charge),
            status=charge.status,
            admin_override=charge.admin_override,
        )

    async def can_modify_charge(self, charge_id: str, user_id: str) -> bool:
        charge = await self.repository.load(charge_id)
        user = await self.permissions.get_user(user_id)
        return can_be_modified_by(charge, user)

    async def update_charge(
        self,
        charge_id: str,
        actor_id: str,
        changes: ServiceChargeUpdate
    ) -> ServiceCharge:
        """Edit descriptive fields. Amount and ledger are never edited here."""
        charge = await self.repository.load(charge_id)
        actor = await self.permissions.get_user(actor_id)
        if not can_be_modified_by(charge, actor):
            raise UnauthorizedError(actor.user_id, "admin or charge creator")

        if charge.status == ChargeStatus.CANCELLED.value:
            raise ValidationError("Cancelled service charges cannot be edited")

        updates = changes.model_dump(exclude_unset=True, exclude_none=True)
        if "affected_users" in updates:
            remaining = updates["affected_users"] or []
            if not remaining:
                raise ValidationError("At least one affected user is required", field="affected_users")
            dropped_payers = [p for p in charge.paid_by if p not in remaining]
            if dropped_payers:
                raise ValidationError(
                    f"Users who already paid cannot be removed: {dropped_payers}",
                    field="affected_users"
                )

        old_value = {field: getattr(charge, field) for field in updates}
        for field, value in updates.items():
            setattr(charge, field, value)
        charge = ServiceCharge.model_validate(charge.model_dump(by_alias=True))

        await self.repository.save(charge)
        await self.audit.log_action(
            entity_type="SERVICE_CHARGE",
            entity_id=charge.charge_id,
            action_type="UPDATE",
            user_id=actor.user_id,
            estate_id=charge.estate_id,
            old_value=old_value,
            new_value=updates
        )
        return charge

    async def mark_as_paid(self, charge_id: str, admin_id: str) -> ServiceCharge:
        """Admin override: status -> paid without touching the ledger."""
        admin = await self.permissions.get_user(admin_id)
        self.permissions.check_admin_role(admin)
        return await self._transition(charge_id, ChargeStatus.PAID.value, admin, admin_override=True)

    async def mark_as_unpaid(self, charge_id: str, admin_id: str) -> ServiceCharge:
        """Admin override: status -> unpaid; payments and paid_by are kept."""
        admin = await self.permissions.get_user(admin_id)
        self.permissions.check_admin_role(admin)
        return await self._transition(charge_id, ChargeStatus.UNPAID.value, admin, admin_override=True)

    async def cancel_charge(self, charge_id: str, actor_id: str) -> ServiceCharge:
        actor = await self.permissions.get_user(actor_id)
        self.permissions.check_charge_manager(actor)
        return await self._transition(charge_id, ChargeStatus.CANCELLED.value, actor, admin_override=False)

    async def reopen_charge(self, charge_id: str, admin_id: str) -> ServiceCharge:
        """unpaid -> active; the ledger decides again, so a covered charge settles at once."""
        admin = await self.permissions.get_user(admin_id)
        self.permissions.check_admin_role(admin)
        charge = await self._transition(charge_id, ChargeStatus.ACTIVE.value, admin, admin_override=False)
        return await self._settle(charge)

    async def _transition(
        self,
        charge_id: str,
        to_state: str,
        actor: User,
        admin_override: bool
    ) -> ServiceCharge:
        charge = await self.repository.load(charge_id)
        from_state = charge.status
        if from_state == to_state:
            return charge

        self.machine.validate_transition(from_state, to_state)
        entry = self.machine.get_history_entry(
            from_state,
            to_state,
            user_id=actor.user_id,
            metadata={"admin_override": admin_override, "role": actor.role}
        )
        updated = await self.repository.transition_status(
            charge_id, [from_state], to_state, entry, admin_override
        )
        if updated is None:
            current = await self.repository.load(charge_id)
            raise InvalidTransitionError(
                entity=self.machine.entity_name,
                from_state=current.status,
                to_state=to_state,
                allowed=self.machine.get_allowed_transitions(current.status)
            )

        await self.audit.log_action(
            entity_type="SERVICE_CHARGE",
            entity_id=charge_id,
            action_type="STATUS_CHANGE",
            user_id=actor.user_id,
            estate_id=updated.estate_id,
            old_value={"status": from_state},
            new_value={"status": to_state, "admin_override": admin_override}
        )
        logger.info(
            f"[SETTLEMENT] Charge {charge_id}: '{from_state}' -> '{to_state}' "
            f"by {actor.user_id} (override={admin_override})"
        )
        return updated

    async def _settle(self, charge: ServiceCharge) -> ServiceCharge:
        """Move a covered charge to paid. Losing the status swap is not an error."""
        if charge.status not in SETTLEABLE_STATUSES or not is_fully_paid(charge):
            return charge

        from_state = charge.status
        entry = self.machine.get_history_entry(
            from_state,
            ChargeStatus.PAID.value,
            metadata={"reason": "settled", "completed_total": completed_total(charge)}
        )
        updated = await self.repository.transition_status(
            charge.charge_id, [from_state], ChargeStatus.PAID.value, entry, admin_override=False
        )
        if updated is None:
            return await self.repository.load(charge.charge_id)

        await self.audit.log_action(
            entity_type="SERVICE_CHARGE",
            entity_id=charge.charge_id,
            action_type="STATUS_CHANGE",
            user_id=None,
            estate_id=charge.estate_id,
            old_value={"status": from_state},
            new_value={"status": ChargeStatus.PAID.value, "completed_total": completed_total(charge)}
        )
        logger.info(f"[SETTLEMENT] Charge {charge.charge_id} fully paid ({completed_total(charge)}/{charge.amount})")
        return updated

    # =========================================================================
    # PAYMENT INITIALIZATION
    # =========================================================================

    async def initialize_payment(
        self,
        charge_id: str,
        payer_id: str,
        provider: str,
        amount: int,
        method: str,
        description: Optional[str] = None
    ) -> PaymentInitResult:
        """
        Append a pending entry and open a checkout with the gateway.

        A definite gateway rejection removes the entry again. An ambiguous
        failure (timeout, 5xx) leaves it pending for a later verification
        or webhook to reconcile. Either way the ProviderError propagates.
        """
        client = self.providers.get(provider)
        validate_positive(amount, "amount")

        charge = await self.repository.load(charge_id)
        if payer_id in charge.paid_by:
            raise AlreadyPaidError(charge_id, payer_id)
        if charge.status != ChargeStatus.ACTIVE.value:
            raise ValidationError(f"Service charge is not active (status: {charge.status})", field="status")
        if payer_id not in charge.affected_users:
            raise ValidationError("User is not liable for this service charge", field="payer_id")

        payer = await self.permissions.get_user(payer_id)
        reference = generate_reference()
        payment = Payment(
            reference=reference,
            provider=provider,
            amount=amount,
            status=PaymentStatus.PENDING,
            paid_by=payer_id,
            metadata={"payment_method": method, "description": description},
        )

        updated = await self.repository.append_payment(charge_id, payment)
        if updated is None:
            # Lost a race with a settlement or status change
            current = await self.repository.load(charge_id)
            if payer_id in current.paid_by:
                raise AlreadyPaidError(charge_id, payer_id)
            raise ValidationError(f"Service charge is not active (status: {current.status})", field="status")

        details = PaymentDetails(
            reference=reference,
            amount=amount,
            currency=charge.currency,
            email=payer.email or "",
            name=payer.name,
            phone_number=payer.phone_number,
            description=description or f"Service Charge Payment: {charge.title}",
            redirect_url=f"{self.app_url}/payments/verify?ref={reference}&provider={provider}",
        )

        try:
            result = await client.initialize(details)
        except ProviderError as e:
            e.reference = e.reference or reference
            if e.ambiguous:
                logger.warning(
                    f"[SETTLEMENT] {provider} outcome unknown for {reference}; entry left pending"
                )
            else:
                await self.repository.remove_pending_payment(charge_id, reference)
                logger.warning(f"[SETTLEMENT] {provider} rejected {reference}; pending entry removed")
            raise

        if result.provider_reference:
            await self.repository.set_provider_reference(reference, result.provider_reference)

        await self.audit.log_action(
            entity_type="PAYMENT",
            entity_id=reference,
            action_type="PAYMENT_INITIALIZED",
            user_id=payer_id,
            estate_id=charge.estate_id,
            new_value={"charge_id": charge_id, "provider": provider, "amount": amount}
        )
        logger.info(f"[SETTLEMENT] Payment {reference} initialized via {provider} for charge {charge_id}")
        return PaymentInitResult(redirect_url=result.redirect_url, reference=reference, provider=provider)

    # =========================================================================
    # VERIFICATION (PULL)
    # =========================================================================

    async def verify_payment(self, reference: str, provider: str) -> VerificationOutcome:
        charge, payment = await self._locate(reference, provider)

        if payment.status == PaymentStatus.COMPLETED.value:
            return self._already_verified(reference, charge)
        if payment.status == PaymentStatus.FAILED.value:
            return VerificationOutcome(
                status=PaymentStatus.FAILED.value,
                message="Payment verification failed",
                reference=reference,
                charge_status=charge.status,
            )

        client = self.providers.get(provider)
        result = await client.verify(reference, payment.provider_reference)

        if result.succeeded:
            if not self._covers(charge, payment, result.amount, result.currency):
                return VerificationOutcome(
                    status=PaymentStatus.PENDING.value,
                    message="Payment amount does not match the gateway record",
                    reference=reference,
                    charge_status=charge.status,
                )
            updated = await self._complete(charge, payment)
            if updated is None:
                current = await self.repository.find_by_payment_reference(reference)
                return self._already_verified(reference, current)
            return VerificationOutcome(
                status=PaymentStatus.COMPLETED.value,
                message="Payment verified successfully",
                reference=reference,
                charge_status=updated.status,
            )

        if result.failed:
            updated = await self._fail(charge, payment)
            return VerificationOutcome(
                status=PaymentStatus.FAILED.value,
                message="Payment verification failed",
                reference=reference,
                charge_status=(updated or charge).status,
            )

        return VerificationOutcome(
            status=PaymentStatus.PENDING.value,
            message="Payment is still being processed",
            reference=reference,
            charge_status=charge.status,
        )

    # =========================================================================
    # WEBHOOKS (PUSH)
    # =========================================================================

    async def handle_webhook(
        self,
        provider: str,
        signature: Optional[str],
        raw_payload: bytes
    ) -> WebhookOutcome:
        """
        Authenticate, parse and apply a provider event. Nothing is parsed
        or written before the signature checks out.
        """
        validator = self.validators.get(provider)
        if validator is None:
            raise ValidationError(f"Invalid payment provider: {provider}", field="provider")

        if not validator.validate(signature, raw_payload, self.webhook_secrets.get(provider)):
            logger.warning(f"[WEBHOOK] Rejected {provider} webhook with invalid signature")
            raise InvalidSignatureError(provider)

        event = parse_webhook_event(provider, raw_payload)
        if event.outcome == OUTCOME_IGNORED:
            logger.info(f"[WEBHOOK] Ignoring {provider} event '{event.event_type}'")
            return WebhookOutcome(status="ignored", reference=event.reference)

        charge, payment = await self._locate(event.reference, provider)
        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"[WEBHOOK] Duplicate {provider} event for {event.reference} ({payment.status})")
            return WebhookOutcome(status="duplicate", reference=event.reference, payment_status=payment.status)

        if event.outcome == PaymentStatus.COMPLETED.value:
            if not self._covers(charge, payment, event.amount, event.currency):
                return WebhookOutcome(status="ignored", reference=event.reference, payment_status=payment.status)
            updated = await self._complete(charge, payment, fallback_email=event.customer_email)
        else:
            updated = await self._fail(charge, payment, fallback_email=event.customer_email)

        if updated is None:
            return WebhookOutcome(status="duplicate", reference=event.reference)

        applied = find_payment(updated, event.reference)
        return WebhookOutcome(
            status="processed",
            reference=event.reference,
            payment_status=applied.status if applied else event.outcome,
        )

    # =========================================================================
    # LEDGER TRANSITIONS
    # =========================================================================

    async def _locate(self, reference: Optional[str], provider: str):
        if not reference:
            raise ValidationError("Payment reference is required", field="reference")

        charge = await self.repository.find_by_payment_reference(reference)
        payment = find_payment(charge, reference)
        if payment is None:
            raise NotFoundError("Payment", reference)
        if payment.provider != provider:
            raise ValidationError(
                f"Payment {reference} was made with {payment.provider}, not {provider}",
                field="provider"
            )
        return charge, payment

    def _covers(
        self,
        charge: ServiceCharge,
        payment: Payment,
        amount: Optional[int],
        currency: Optional[str]
    ) -> bool:
        """The gateway must have collected at least the entry's amount, in the charge currency."""
        if amount is not None and amount < payment.amount:
            logger.warning(
                f"[SETTLEMENT] Gateway reported {amount} for {payment.reference}, expected {payment.amount}"
            )
            return False
        if currency and currency.upper() != charge.currency.upper():
            logger.warning(
                f"[SETTLEMENT] Gateway currency {currency} for {payment.reference}, expected {charge.currency}"
            )
            return False
        return True

    async def _complete(
        self,
        charge: ServiceCharge,
        payment: Payment,
        fallback_email: Optional[str] = None
    ) -> Optional[ServiceCharge]:
        """pending -> completed; None when another caller already applied it."""
        paid_at = datetime.utcnow()
        updated = await self.repository.complete_payment(payment.reference, payment.paid_by, paid_at)
        if updated is None:
            logger.info(f"[SETTLEMENT] Payment {payment.reference} already transitioned")
            return None

        logger.info(f"[SETTLEMENT] Payment {payment.reference} completed for charge {charge.charge_id}")
        updated = await self._settle(updated)

        await self.audit.log_action(
            entity_type="PAYMENT",
            entity_id=payment.reference,
            action_type="PAYMENT_COMPLETED",
            user_id=payment.paid_by,
            estate_id=charge.estate_id,
            new_value={"charge_id": charge.charge_id, "amount": payment.amount, "charge_status": updated.status}
        )
        await self._notify(updated, payment, paid_at, success=True, fallback_email=fallback_email)
        return updated

    async def _fail(
        self,
        charge: ServiceCharge,
        payment: Payment,
        fallback_email: Optional[str] = None
    ) -> Optional[ServiceCharge]:
        updated = await self.repository.fail_payment(payment.reference)
        if updated is None:
            return None

        logger.info(f"[SETTLEMENT] Payment {payment.reference} failed for charge {charge.charge_id}")
        await self.audit.log_action(
            entity_type="PAYMENT",
            entity_id=payment.reference,
            action_type="PAYMENT_FAILED",
            user_id=payment.paid_by,
            estate_id=charge.estate_id,
            new_value={"charge_id": charge.charge_id, "amount": payment.amount}
        )
        await self._notify(updated, payment, datetime.utcnow(), success=False, fallback_email=fallback_email)
        return updated

    async def _notify(
        self,
        charge: ServiceCharge,
        payment: Payment,
        when: datetime,
        success: bool,
        fallback_email: Optional[str]
    ):
        """Runs after the ledger has committed; failures are logged, never raised."""
        email = fallback_email
        name = "Resident"
        try:
            payer = await self.permissions.get_user(payment.paid_by)
            email = payer.email or fallback_email
            name = payer.name
        except NotFoundError:
            logger.warning(f"[NOTIFY] Payer {payment.paid_by} not found; using gateway email")
        except Exception as e:
            logger.error(f"[NOTIFY] Payer lookup failed for {payment.reference}: {str(e)}")

        details = PaymentEmailDetails(
            user_name=name,
            amount=payment.amount,
            currency=charge.currency,
            charge_title=charge.title,
            reference=payment.reference,
            provider=payment.provider,
            date=when.strftime("%Y-%m-%d"),
        )
        try:
            if success:
                await self.notifier.send_payment_success(email, details)
            else:
                await self.notifier.send_payment_failure(email, details)
        except Exception as e:
            logger.error(f"[NOTIFY] Notification failed for {payment.reference}: {str(e)}")

    def _already_verified(self, reference: str, charge: ServiceCharge) -> VerificationOutcome:
        return VerificationOutcome(
            status=PaymentStatus.COMPLETED.value,
            message="Payment already verified",
            reference=reference,
            already_verified=True,
            charge_status=charge.status,
        )
