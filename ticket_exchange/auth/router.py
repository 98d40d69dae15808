from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.auth.dependencies import get_current_user
from ticket_exchange.auth.schemas import NotificationResponse, ProvisionRequest, UserResponse
from ticket_exchange.auth.service import IdentityService
from ticket_exchange.config import settings
from ticket_exchange.database import get_db
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.models import Notification, User

router = APIRouter()


@router.post("/provision", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def provision_identity(
    request: ProvisionRequest,
    x_identity_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Identity-provider callback run when an account is created"""
    if x_identity_secret != settings.IDENTITY_WEBHOOK_SECRET:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity secret")
    try:
        return IdentityService(db, notifier).provision_identity(
            request.user_id, request.email, request.display_name, request.referral_code
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/me", response_model=UserResponse)
def read_me(current_user: User = Depends(get_current_user)):
    """Get current user profile"""
    return current_user


@router.get("/me/notifications", response_model=List[NotificationResponse])
def list_notifications(
    unread_only: bool = False,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Notification).filter(Notification.user_id == current_user.id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(100).all()
