from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, status
from sqlalchemy.orm import Session, sessionmaker

from ticket_exchange.auth.dependencies import decode_identity_token, get_current_user
from ticket_exchange.database import get_db, get_session_factory
from ticket_exchange.handshake.handshake_service import HandshakeService
from ticket_exchange.handshake.schemas import HandshakeInitiate, PendingPaymentResponse
from ticket_exchange.handshake.stream import handshake_stream_endpoint
from ticket_exchange.integrations.notifications import NotificationSink, get_notifier
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import User

router = APIRouter()


@router.post("/", response_model=PendingPaymentResponse, status_code=status.HTTP_201_CREATED)
def initiate_handshake(
    request: HandshakeInitiate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Vendor requests a payment from a nearby customer"""
    try:
        return HandshakeService(db).initiate(
            current_user.id, request.customer_id, request.event_id, request.amount_cents, request.ticket_type_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/pending", response_model=List[PendingPaymentResponse])
def list_pending(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Open payment requests waiting for the current user's approval"""
    return HandshakeService(db).list_pending_for_customer(current_user.id)


@router.get("/{pending_id}", response_model=PendingPaymentResponse)
def get_handshake(pending_id: str, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = HandshakeService(db).get(pending_id)
    if current_user.id not in (row.vendor_id, row.customer_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your payment request")
    return row


@router.post("/{pending_id}/confirm", response_model=PendingPaymentResponse)
def confirm_handshake(
    pending_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: NotificationSink = Depends(get_notifier),
):
    return HandshakeService(db, processor, notifier).confirm(pending_id, current_user.id)


@router.post("/{pending_id}/cancel", response_model=PendingPaymentResponse)
def cancel_handshake(pending_id: str, current_user: User = Depends(get_current_user),
                     db: Session = Depends(get_db)):
    return HandshakeService(db).cancel(pending_id, current_user.id)


@router.websocket("/ws")
async def handshake_updates(
    websocket: WebSocket,
    token: str = Query(...),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """WebSocket stream of the authenticated customer's payment requests"""
    try:
        claims = decode_identity_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await handshake_stream_endpoint(websocket, claims["sub"], session_factory=session_factory)
