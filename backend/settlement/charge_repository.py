"""
SERVICE CHARGE PERSISTENCE (MongoDB)

Charges live in the service_charges collection with their payment ledger
embedded as the `payments` array.

Every state change on a payment or on the charge status is a single
conditional update (compare-and-swap on the status field), so concurrent
verification calls and webhook deliveries for the same reference resolve
to exactly one winner. Whole-document save() remains for admin edits.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from models import ServiceCharge, Payment, ChargeStatus, PaymentStatus
from settlement.errors import NotFoundError, ConcurrentModificationError

logger = logging.getLogger(__name__)


def _object_id(charge_id: str) -> ObjectId:
    try:
        return ObjectId(charge_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Service charge", str(charge_id))


class MongoChargeRepository:
    """
    Persistence store for service charges.

    load / save / find_by_payment_reference are the plain document
    operations; the remaining methods are conditional updates that return
    the updated charge, or None when the precondition no longer holds.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.service_charges

    # =========================================================================
    # DOCUMENT OPERATIONS
    # =========================================================================

    async def insert(self, charge: ServiceCharge) -> ServiceCharge:
        doc = charge.to_document()
        result = await self.collection.insert_one(doc)
        charge.charge_id = str(result.inserted_id)
        logger.info(f"[REPOSITORY] Inserted service charge {charge.charge_id}")
        return charge

    async def load(self, charge_id: str) -> ServiceCharge:
        doc = await self.collection.find_one({"_id": _object_id(charge_id)})
        if not doc:
            raise NotFoundError("Service charge", charge_id)
        return ServiceCharge.from_document(doc)

    async def save(self, charge: ServiceCharge) -> None:
        """
        Replace the whole document. Guarded by the updated_at value it was
        loaded with; every conditional update bumps updated_at, so a save
        never overwrites a payment that completed after the load.
        """
        loaded_at = charge.updated_at
        charge.updated_at = datetime.utcnow()
        doc = charge.to_document()
        result = await self.collection.replace_one({"_id": doc["_id"], "updated_at": loaded_at}, doc)
        if result.matched_count == 0:
            charge.updated_at = loaded_at
            if await self.collection.count_documents({"_id": doc["_id"]}, limit=1):
                raise ConcurrentModificationError(charge.charge_id)
            raise NotFoundError("Service charge", charge.charge_id)

    async def find_by_payment_reference(self, reference: str) -> ServiceCharge:
        doc = await self.collection.find_one({"payments.reference": reference})
        if not doc:
            raise NotFoundError("Payment", reference)
        return ServiceCharge.from_document(doc)

    # =========================================================================
    # CONDITIONAL LEDGER UPDATES
    # =========================================================================

    async def append_payment(self, charge_id: str, payment: Payment) -> Optional[ServiceCharge]:
        """
        Push a pending entry while the charge is active and the payer has
        not yet paid. None means the precondition failed at write time.
        """
        doc = await self.collection.find_one_and_update(
            {
                "_id": _object_id(charge_id),
                "status": ChargeStatus.ACTIVE.value,
                "paid_by": {"$ne": payment.paid_by},
                "payments.reference": {"$ne": payment.reference}
            },
            {
                "$push": {"payments": payment.model_dump()},
                "$set": {"updated_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER
        )
        return ServiceCharge.from_document(doc) if doc else None

    async def remove_pending_payment(self, charge_id: str, reference: str) -> bool:
        """Pull an entry only while it is still pending."""
        result = await self.collection.update_one(
            {"_id": _object_id(charge_id)},
            {
                "$pull": {"payments": {"reference": reference, "status": PaymentStatus.PENDING.value}},
                "$set": {"updated_at": datetime.utcnow()}
            }
        )
        return result.modified_count > 0

    async def set_provider_reference(self, reference: str, provider_reference: str) -> None:
        await self.collection.update_one(
            {"payments.reference": reference},
            {"$set": {"payments.$.provider_reference": provider_reference}}
        )

    async def complete_payment(
        self,
        reference: str,
        payer_id: str,
        paid_at: datetime
    ) -> Optional[ServiceCharge]:
        """
        pending -> completed, and add the payer to paid_by.
        Exactly one concurrent caller gets the updated charge back.
        """
        doc = await self.collection.find_one_and_update(
            {
                "payments": {
                    "$elemMatch": {"reference": reference, "status": PaymentStatus.PENDING.value}
                }
            },
            {
                "$set": {
                    "payments.$.status": PaymentStatus.COMPLETED.value,
                    "payments.$.paid_at": paid_at,
                    "updated_at": datetime.utcnow()
                },
                "$addToSet": {"paid_by": payer_id}
            },
            return_document=ReturnDocument.AFTER
        )
        return ServiceCharge.from_document(doc) if doc else None

    async def fail_payment(self, reference: str) -> Optional[ServiceCharge]:
        """pending -> failed."""
        doc = await self.collection.find_one_and_update(
            {
                "payments": {
                    "$elemMatch": {"reference": reference, "status": PaymentStatus.PENDING.value}
                }
            },
            {
                "$set": {
                    "payments.$.status": PaymentStatus.FAILED.value,
                    "updated_at": datetime.utcnow()
                }
            },
            return_document=ReturnDocument.AFTER
        )
        return ServiceCharge.from_document(doc) if doc else None

    async def transition_status(
        self,
        charge_id: str,
        from_statuses: List[str],
        to_status: str,
        history_entry: Dict[str, Any],
        admin_override: bool
    ) -> Optional[ServiceCharge]:
        """Compare-and-swap on the charge status."""
        doc = await self.collection.find_one_and_update(
            {"_id": _object_id(charge_id), "status": {"$in": list(from_statuses)}},
            {
                "$set": {
                    "status": to_status,
                    "admin_override": admin_override,
                    "updated_at": datetime.utcnow()
                },
                "$push": {"status_history": history_entry}
            },
            return_document=ReturnDocument.AFTER
        )
        return ServiceCharge.from_document(doc) if doc else None

    # =========================================================================
    # INDEXES
    # =========================================================================

    async def create_indexes(self):
        """Create indexes backing reference lookups and uniqueness."""
        try:
            await self.collection.create_index(
                "payments.reference",
                unique=True,
                sparse=True,
                name="unique_payment_reference"
            )
            await self.collection.create_index("affected_users", name="affected_users")
            await self.collection.create_index("status", name="status")
            logger.info("[REPOSITORY] Service charge indexes created")
        except Exception as e:
            # Index may already exist with different options
            logger.warning(f"[REPOSITORY] Index creation result: {str(e)}")
