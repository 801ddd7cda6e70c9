from fastapi import FastAPI, APIRouter, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
from typing import Optional
import logging

from config import Settings, get_settings
from audit_service import AuditService
from notification_service import build_notifier
from permissions import PermissionChecker
from settlement.charge_repository import MongoChargeRepository
from settlement.errors import SettlementError, InvalidSignatureError, NotFoundError
from settlement.payment_providers import build_provider_registry
from settlement.settlement_service import SettlementService
from settlement.webhook_validation import default_validators
from webhook_routes import webhook_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================
# ERROR MAPPING
# ============================================

# Only the webhook receiver is mounted. Anything not listed is a failed
# delivery the gateway should retry.
ERROR_STATUS_CODES = [
    (InvalidSignatureError, status.HTTP_401_UNAUTHORIZED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
]


def status_code_for(error: SettlementError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI):
    """Translate settlement errors into HTTP responses."""

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {str(exc)}")
        else:
            logger.warning(f"[API] {request.method} {request.url.path} rejected ({status_code}): {str(exc)}")

        content = {"detail": str(exc), "error": type(exc).__name__}
        field = getattr(exc, "field", None)
        if field:
            content["field"] = field
        return JSONResponse(status_code=status_code, content=content)


# ============================================
# APPLICATION FACTORY
# ============================================

def build_settlement_service(db, settings: Settings) -> SettlementService:
    return SettlementService(
        repository=MongoChargeRepository(db),
        providers=build_provider_registry(settings),
        permissions=PermissionChecker(db),
        audit=AuditService(db),
        notifier=build_notifier(settings),
        validators=default_validators(),
        webhook_secrets=settings.webhook_secrets(),
        app_url=settings.APP_URL,
        default_currency=settings.DEFAULT_CURRENCY,
    )


def create_app(
    settings: Optional[Settings] = None,
    settlement_service: Optional[SettlementService] = None
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Estate Service Charge Settlement",
        version="1.0.0",
        description="Service charge payments, gateway webhooks and settlement"
    )

    client = None
    if settlement_service is None:
        client = AsyncIOMotorClient(settings.MONGO_URL)
        settlement_service = build_settlement_service(client[settings.DB_NAME], settings)
    app.state.settlement_service = settlement_service

    register_exception_handlers(app)

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0",
            "providers": settlement_service.providers.providers()
        }

    app.include_router(api_router)
    app.include_router(webhook_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def create_indexes():
        if client is not None:
            await settlement_service.repository.create_indexes()

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if client is not None:
            client.close()

    return app


app = create_app()
