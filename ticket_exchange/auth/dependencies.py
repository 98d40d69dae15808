import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ticket_exchange.auth.service import IdentityService
from ticket_exchange.config import settings
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.models import User

bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity_token(token: str) -> dict:
    """Verify a token issued by the identity provider and return its claims"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise credentials_exception
    if not payload.get("sub") or not payload.get("email"):
        raise credentials_exception
    return payload


def user_from_token(token: str, db: Session, notifier: NotificationSink) -> User:
    payload = decode_identity_token(token)
    identity = IdentityService(db, notifier)
    user = identity.get_user(payload["sub"])
    if user is None:
        try:
            user = identity.provision_identity(payload["sub"], payload["email"], payload.get("name"),
                                               payload.get("referral_code"))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
) -> User:
    """Resolve the bearer token to a local user, provisioning it on first sight"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_from_token(credentials.credentials, db, notifier)


def require_platform_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_platform_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions"
        )
    return current_user
