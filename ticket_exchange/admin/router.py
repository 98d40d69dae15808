from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ticket_exchange.admin.maintenance_service import MaintenanceService
from ticket_exchange.admin.schemas import AuditReport, ReferralConfigResponse, ReferralConfigUpdate, SweepResult
from ticket_exchange.auth.dependencies import require_platform_admin
from ticket_exchange.database import get_db
from ticket_exchange.integrations.processor import PaymentProcessor, get_processor
from ticket_exchange.models import Payment, PaymentStatus, User
from ticket_exchange.payments.referral_service import ReferralService
from ticket_exchange.payments.schemas import PaymentResponse
from ticket_exchange.payments.settlement_service import is_reconciliation_required

router = APIRouter()


@router.post("/sweep", response_model=SweepResult)
def run_sweeps(
    admin: User = Depends(require_platform_admin),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Apply overdue expiries now instead of waiting for the scheduler"""
    return MaintenanceService(db, processor=processor).run_sweeps()


@router.get("/audit", response_model=AuditReport)
def audit(admin: User = Depends(require_platform_admin), db: Session = Depends(get_db)):
    return MaintenanceService(db).audit()


@router.get("/referral-config", response_model=ReferralConfigResponse)
def get_referral_config(admin: User = Depends(require_platform_admin), db: Session = Depends(get_db)):
    return ReferralService(db).load_config_snapshot()


@router.put("/referral-config", response_model=ReferralConfigResponse)
def update_referral_config(
    update: ReferralConfigUpdate,
    admin: User = Depends(require_platform_admin),
    db: Session = Depends(get_db),
):
    try:
        return ReferralService(db).update_config(
            update.discount_percent, update.revenue_share_percent, update.benefit_duration_days, update.enabled
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/reconciliation", response_model=List[PaymentResponse])
def reconciliation_queue(admin: User = Depends(require_platform_admin), db: Session = Depends(get_db)):
    """Payments whose processor outcome could not be applied and need manual review"""
    candidates = (
        db.query(Payment)
        .filter(Payment.status.in_([PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value,
                                    PaymentStatus.PROCESSING.value]))
        .order_by(Payment.updated_at.desc())
        .all()
    )
    return [payment for payment in candidates if is_reconciliation_required(payment)]
