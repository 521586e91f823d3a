from typing import Callable, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from billsync.core.config import settings
from billsync.core.security import decode_access_token
from billsync.db.session import get_db
from billsync.models.user import User
from billsync.repositories.user_repository import UserRepository
from billsync.services.notification_service import CeleryNotifier, LoggingNotifier, Notifier
from billsync.services.payment_gateway import PaymentGateway, require_gateway

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not (credentials.credentials or "").strip():
        logger.warning("Request without bearer token")
        raise _unauthorized("Authentication token missing")

    token = credentials.credentials.strip()
    if token.startswith("Bearer "):
        token = token[7:].strip()

    payload = decode_access_token(token)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id_raw = payload.get("sub")
    try:
        user_id = int(user_id_raw)
    except (ValueError, TypeError):
        logger.error(f"Token 'sub' is not a user id: {user_id_raw!r}")
        raise _unauthorized("Invalid token")

    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        logger.error(f"User {user_id} from token not found")
        raise _unauthorized("User not found")
    if not user.is_active:
        logger.warning(f"User {user_id} is inactive")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


def get_gateway() -> PaymentGateway:
    """Raises GatewayUnavailableError (503, retryable) when the gateway could not be initialized."""
    return require_gateway()


def get_gateway_provider() -> Callable[[], PaymentGateway]:
    """For endpoints that only sometimes need the gateway (e.g. cancelling a free plan)."""
    return require_gateway


# No broker configured: notifications are only logged
_notifier: Notifier = CeleryNotifier() if settings.REDIS_URL else LoggingNotifier()


def get_notifier() -> Notifier:
    return _notifier
