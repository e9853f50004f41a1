"""
FastAPI Dependencies - Authentication and service wiring.

Bearer JWTs identify end users; the X-API-Key header identifies operators.
Services are built per request around a request-scoped database session.
"""

import hmac
from datetime import timedelta
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.repository import SqlAlchemyValuationStore
from app.db.session import get_db
from app.db.store import ValuationStore
from app.services.blob_storage import BlobStorage
from app.services.entitlement import EntitlementService
from app.services.valuation import ValuationService
from app.services.valuation_client import ValuationClient

logger = get_logger(__name__)

# Bearer token scheme for user JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# User JWT Authentication
# ============================================================================


def decode_account_token(token: str, secret: str, audience: str) -> UUID:
    """
    Verify an HS256 access token and return the account id in ``sub``.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong audience or bad subject
    """
    payload = jwt.decode(token, secret, algorithms=["HS256"], audience=audience)
    subject = payload.get("sub")
    try:
        return UUID(str(subject))
    except ValueError as exc:
        raise jwt.InvalidTokenError("subject is not an account id") from exc


async def get_optional_account_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> UUID | None:
    """
    Account id from the bearer token, or None when no token was sent.

    A token that is present but invalid is rejected rather than treated as
    anonymous.
    """
    if credentials is None:
        return None

    if not settings.auth_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server misconfiguration: AUTH_JWT_SECRET not set",
        )

    try:
        return decode_account_token(
            credentials.credentials, settings.auth_jwt_secret, settings.auth_jwt_audience
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("account_token_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_account_id(
    account_id: UUID | None = Depends(get_optional_account_id),
) -> UUID:
    """Account id from the bearer token; 401 when missing."""
    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account_id


# ============================================================================
# Operator API Key Authentication
# ============================================================================


async def require_admin_key(
    x_api_key: str | None = Header(None, description="Operator API key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Validate the X-API-Key header against ADMIN_API_KEY.

    Raises:
        HTTPException 401 if missing, 403 if wrong or operator access is disabled
    """
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-API-Key header required",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not settings.admin_api_key or not hmac.compare_digest(
        x_api_key.encode(), settings.admin_api_key.encode()
    ):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )


# ============================================================================
# Service Wiring
# ============================================================================


async def get_store(db: AsyncSession = Depends(get_db)) -> ValuationStore:
    return SqlAlchemyValuationStore(db)


async def get_entitlement_service(
    store: ValuationStore = Depends(get_store),
) -> EntitlementService:
    return EntitlementService(store)


async def get_valuation_service(
    request: Request,
    store: ValuationStore = Depends(get_store),
    entitlement: EntitlementService = Depends(get_entitlement_service),
    settings: Settings = Depends(get_settings),
) -> ValuationService:
    """Lifecycle service around the app-wide provider client and blob storage."""
    return build_valuation_service(
        store,
        entitlement,
        request.app.state.valuation_client,
        request.app.state.blob_storage,
        settings,
    )


def build_valuation_service(
    store: ValuationStore,
    entitlement: EntitlementService,
    client: ValuationClient,
    blobs: BlobStorage,
    settings: Settings,
) -> ValuationService:
    """ValuationService configured from settings; shared by routes and the sweeper."""
    return ValuationService(
        store,
        entitlement,
        client,
        blobs,
        allow_anonymous=settings.anonymous_valuations_enabled,
        max_images=settings.max_images_per_request,
        analyzing_timeout=timedelta(minutes=settings.analyzing_timeout_minutes),
        refund_on_sweep=settings.refund_on_sweep,
    )


async def get_blob_storage(request: Request) -> BlobStorage:
    blobs: BlobStorage = request.app.state.blob_storage
    return blobs
