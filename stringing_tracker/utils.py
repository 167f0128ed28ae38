# stringing_tracker/utils.py

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Annotated
import hmac
import logging
from stringing_tracker import settings
from stringing_tracker.models import Principal, Role

# Configure logging
logger = logging.getLogger(__name__)

# JWT Configuration
SECRET_KEY = str(settings.SECRET_KEY)  # Shared with the identity provider
ALGORITHM = "HS256"

# Tokens are issued by the identity provider, this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def create_access_token(data: dict, expires_delta: timedelta|None = None) -> str:
    """
    Create a JWT access token with optional expiration.

    Args:
        data (dict): The claims to include, at least ``sub`` and ``role``.
        expires_delta (timedelta, optional): Lifetime of the token.

    Returns:
        str: The encoded JWT.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_principal(token: str|None) -> Principal:
    """
    Decode a bearer token into the authenticated principal.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or lacks claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        subject = payload.get("sub")
        role = payload.get("role")
        if subject is None or role is None:
            raise credentials_exception
        principal = Principal(subject=str(subject), role=Role(role))
    except (JWTError, ValueError):
        raise credentials_exception
    logger.debug(f"Decoded token for subject {principal.subject}, Role: {principal.role}")
    return principal


# Dependency to get current principal
async def get_current_user(token: Annotated[str, Depends(oauth2_scheme)]) -> Principal:
    return decode_principal(token)


# Dependency to get current provider (the stringing service operator)
async def get_current_provider(
    principal: Annotated[Principal, Depends(get_current_user)]
) -> Principal:
    if principal.role != Role.PROVIDER:
        raise HTTPException(status_code=403, detail="Insufficient permissions.")
    return principal


# Dependency guarding server-to-server endpoints
async def verify_service_key(x_service_key: Annotated[str|None, Header()] = None) -> None:
    expected = str(settings.SERVICE_API_KEY)
    if not x_service_key or not hmac.compare_digest(x_service_key, expected):
        logger.warning("Rejected internal call with missing or invalid service key.")
        raise HTTPException(status_code=401, detail="Invalid service key.")
