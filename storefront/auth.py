"""
Authentication for the storefront service.

Customers and staff log in at the users service, which issues HS256 bearer
tokens. This service only validates them. Claims used:

    sub    user id (string; numeric ids are stringified)
    email  contact address copied onto new orders
    role   CUSTOMER, ADMIN or OWNER

ADMIN and OWNER are both store staff: they see every order, apply status
transitions, retry carrier bookings, refund payments and run the expiry
sweep. CUSTOMER only reaches their own orders. Webhook endpoints carry no
token; the gateway's are signed and the carrier's are always accepted.
"""
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import ADMIN_ROLES, ALGORITHM, SECRET_KEY
from .errors import Forbidden

logger = logging.getLogger(__name__)

security = HTTPBearer()

KNOWN_ROLES = frozenset({"CUSTOMER", *ADMIN_ROLES})


class CurrentUser(BaseModel):
    """Caller identity taken from a validated token."""
    id: str
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Token tidak valid atau sudah kedaluwarsa",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> CurrentUser:
    """
    Validate a users-service token and read its claims.

    The role is upper-cased; a token without ``sub``, ``email`` or a known
    role is rejected rather than treated as a customer.

    Raises:
        HTTPException: 401 for a bad signature, expiry or missing claims
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized() from e

    user_id = payload.get("sub")
    email = payload.get("email")
    role = str(payload.get("role") or "").upper()
    if user_id is None or not email or role not in KNOWN_ROLES:
        logger.warning(f"Rejected bearer token for sub={user_id!r}: missing claims or unknown role {role!r}")
        raise _unauthorized()

    return CurrentUser(id=str(user_id), email=email, role=role, token=token)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> CurrentUser:
    """FastAPI dependency: the authenticated caller."""
    return decode_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency for staff-only endpoints (ADMIN or OWNER).

    Raises:
        Forbidden: the caller is a customer
    """
    if not current_user.is_admin:
        logger.warning(f"User {current_user.id} with role {current_user.role} denied a staff endpoint")
        raise Forbidden("Hanya admin yang dapat melakukan aksi ini")
    return current_user
