from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stamp_engine.db import get_db
from stamp_engine.deps.tenant import get_active_city, get_admin_id
from stamp_engine.deps.wallet import get_wallet_client
from stamp_engine.errors import NotFoundError
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.schemas.loyalty_pass_request import (
    LoyaltyPassRequestOut,
    LoyaltyPassRequestReject,
    WalletPushCredentials,
)
from stamp_engine.schemas.loyalty_program import LoyaltyProgramOut, LoyaltyProgramStatusUpdate
from stamp_engine.schemas.loyalty_redemption import FlagRedemptionRequest, LoyaltyRedemptionOut
from stamp_engine.services import membership_service, program_service, redemption_service
from stamp_engine.services.wallet_pass_service import WalletPushClient, reconcile_program_passes


router = APIRouter(prefix="/admin/loyalty", tags=["admin-loyalty"], dependencies=[Depends(get_admin_id)])


# ============================================================
# PROVISIONING QUEUE
# ============================================================
@router.get("/queue")
def get_provisioning_queue(
    active_city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    items = program_service.list_pending_requests(db, city=active_city)
    return {
        "items": [
            {
                **LoyaltyPassRequestOut.model_validate(item["request"]).model_dump(mode="json"),
                "ageHours": item["ageHours"],
            }
            for item in items
        ],
        "total": len(items),
    }


@router.post("/requests/{request_id}/activate", response_model=LoyaltyProgramOut)
def activate_loyalty_request(
    request_id: UUID,
    payload: WalletPushCredentials,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    db: Session = Depends(get_db),
):
    return program_service.activate_request(
        db,
        request_id=request_id,
        credentials=payload.model_dump(),
        admin_id=admin_id,
        admin_city=active_city,
    )


@router.post("/requests/{request_id}/reject", response_model=LoyaltyPassRequestOut)
def reject_loyalty_request(
    request_id: UUID,
    payload: LoyaltyPassRequestReject,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    db: Session = Depends(get_db),
):
    return program_service.reject_request(
        db,
        request_id=request_id,
        reason=payload.reason,
        admin_id=admin_id,
        admin_city=active_city,
    )


# ============================================================
# PROGRAMS
# ============================================================
@router.get("/programs", response_model=list[LoyaltyProgramOut])
def list_programs(
    status: str | None = None,
    active_city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    q = db.query(LoyaltyProgram).filter(LoyaltyProgram.city == active_city)
    if status:
        q = q.filter(LoyaltyProgram.status == status)
    return q.order_by(LoyaltyProgram.created_at.desc()).all()


@router.patch("/programs/{program_id}/status", response_model=LoyaltyProgramOut)
def update_program_status(
    program_id: UUID,
    payload: LoyaltyProgramStatusUpdate,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    db: Session = Depends(get_db),
):
    program = program_service.get_program_in_scope(db, program_id, city=active_city)
    return program_service.set_program_status(db, program, payload.status)


@router.post("/programs/{program_id}/wallet-resync")
def resync_program_passes(
    program_id: UUID,
    include_all: bool = False,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    wallet_client: WalletPushClient = Depends(get_wallet_client),
    db: Session = Depends(get_db),
):
    program = program_service.get_program_in_scope(db, program_id, city=active_city)
    stats = reconcile_program_passes(db, program, wallet_client, include_all=include_all)
    return {"programId": str(program.id), **stats}


@router.get("/programs/{program_id}/integrity")
def check_program_integrity(
    program_id: UUID,
    active_city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = program_service.get_program_in_scope(db, program_id, city=active_city)
    discrepancies = membership_service.check_ledger_integrity(db, program)
    return {
        "programId": str(program.id),
        "ok": not discrepancies,
        "discrepancies": discrepancies,
    }


@router.get("/programs/{program_id}/summary")
def get_program_summary(
    program_id: UUID,
    active_city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = program_service.get_program_in_scope(db, program_id, city=active_city)
    return {
        "programId": str(program.id),
        "status": program.status,
        **membership_service.program_summary(db, program),
    }


# ============================================================
# REDEMPTION REVIEW
# ============================================================
def _redemption_in_scope(db: Session, redemption_id: UUID, active_city: str):
    redemption = redemption_service.get_redemption(db, redemption_id)
    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == redemption.program_id).one()
    if program.city != active_city:
        raise NotFoundError("Redemption not found")
    return redemption


@router.post("/redemptions/{redemption_id}/flag", response_model=LoyaltyRedemptionOut)
def flag_redemption(
    redemption_id: UUID,
    payload: FlagRedemptionRequest,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    db: Session = Depends(get_db),
):
    redemption = _redemption_in_scope(db, redemption_id, active_city)
    return redemption_service.flag_redemption(db, redemption, reason=payload.reason, flagged_by=admin_id)


@router.delete("/redemptions/{redemption_id}/flag", response_model=LoyaltyRedemptionOut)
def unflag_redemption(
    redemption_id: UUID,
    active_city: str = Depends(get_active_city),
    admin_id: str = Depends(get_admin_id),
    db: Session = Depends(get_db),
):
    redemption = _redemption_in_scope(db, redemption_id, active_city)
    return redemption_service.unflag_redemption(db, redemption)
