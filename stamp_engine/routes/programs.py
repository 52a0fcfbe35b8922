from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from stamp_engine.db import get_db
from stamp_engine.deps.tenant import get_active_city, get_business_id
from stamp_engine.errors import NotFoundError
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.schemas.loyalty_membership import LoyaltyMembershipOut, MembershipStatusUpdate
from stamp_engine.schemas.loyalty_pass_request import LoyaltyPassRequestOut
from stamp_engine.schemas.loyalty_program import (
    LoyaltyEditRequestCreate,
    LoyaltyProgramCreate,
    LoyaltyProgramDraftUpdate,
    LoyaltyProgramOut,
    LoyaltyProgramSelfServiceUpdate,
)
from stamp_engine.schemas.loyalty_redemption import FlagRedemptionRequest, LoyaltyRedemptionOut
from stamp_engine.services import membership_service, program_service, redemption_service
from stamp_engine.services.presence_token_service import rotate_counter_token
from stamp_engine.services.time_utils import utcnow


router = APIRouter(prefix="/loyalty/program", tags=["loyalty-program"])


def _my_program(db: Session, business_id: str, city: str):
    return program_service.get_program_for_business(db, business_id, city=city)


@router.get("", response_model=LoyaltyProgramOut)
def get_my_program(
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    return _my_program(db, business_id, city)


@router.post("", response_model=LoyaltyProgramOut, status_code=201)
def create_program_draft(
    payload: LoyaltyProgramCreate,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True)
    business_name = fields.pop("business_name")
    return program_service.create_draft(
        db,
        business_id=business_id,
        business_name=business_name,
        city=city,
        fields=fields,
    )


@router.patch("/draft", response_model=LoyaltyProgramOut)
def update_program_draft(
    payload: LoyaltyProgramDraftUpdate,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    return program_service.update_draft_fields(db, program, payload.model_dump(exclude_unset=True))


@router.patch("", response_model=LoyaltyProgramOut)
def update_program_self_service(
    payload: LoyaltyProgramSelfServiceUpdate,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    return program_service.update_self_service_fields(db, program, payload.model_dump(exclude_unset=True))


@router.post("/submit")
def submit_program(
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    req = program_service.submit_for_provisioning(db, business_id=business_id, city=city)
    return {"success": True, "status": "submitted", "requestId": str(req.id)}


@router.post("/edit-request", response_model=LoyaltyPassRequestOut)
def submit_program_edit_request(
    payload: LoyaltyEditRequestCreate,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    return program_service.submit_edit_request(
        db,
        business_id=business_id,
        changes=payload.changes,
        change_description=payload.changeDescription,
        city=city,
    )


@router.post("/rotate-token")
def rotate_program_token(
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    token = rotate_counter_token(db, program)
    return {"publicId": program.public_id, "counterQrToken": token}


@router.get("/summary")
def get_program_summary(
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    return {
        "programId": str(program.id),
        "status": program.status,
        **membership_service.program_summary(db, program),
    }


@router.get("/members")
def list_program_members(
    status: str | None = None,
    since: str | None = None,
    format: str | None = None,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)

    since_days = None
    if since:
        try:
            since_days = int(since.rstrip("d"))
        except ValueError:
            since_days = None

    rows = membership_service.list_members(db, program, status=status, since_days=since_days)

    if format == "csv":
        filename = membership_service.members_csv_filename(utcnow().date())
        return Response(
            content=membership_service.members_to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return {"members": rows, "total": len(rows)}


@router.patch("/members/{membership_id}", response_model=LoyaltyMembershipOut)
def update_member_status(
    membership_id: UUID,
    payload: MembershipStatusUpdate,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    membership = (
        db.query(LoyaltyMembership)
        .filter(LoyaltyMembership.id == membership_id, LoyaltyMembership.program_id == program.id)
        .first()
    )
    if not membership:
        raise NotFoundError("Membership not found")
    return membership_service.set_membership_status(db, membership, payload.status)


@router.get("/redemptions", response_model=list[LoyaltyRedemptionOut])
def list_program_redemptions(
    flagged: bool | None = None,
    limit: int = 100,
    offset: int = 0,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    return redemption_service.list_redemptions(db, program, flagged=flagged, limit=limit, offset=offset)


def _my_redemption(db: Session, program, redemption_id: UUID):
    redemption = redemption_service.get_redemption(db, redemption_id)
    if redemption.program_id != program.id:
        raise NotFoundError("Redemption not found")
    return redemption


@router.post("/redemptions/{redemption_id}/flag", response_model=LoyaltyRedemptionOut)
def flag_program_redemption(
    redemption_id: UUID,
    payload: FlagRedemptionRequest,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    redemption = _my_redemption(db, program, redemption_id)
    return redemption_service.flag_redemption(db, redemption, reason=payload.reason, flagged_by=business_id)


@router.delete("/redemptions/{redemption_id}/flag", response_model=LoyaltyRedemptionOut)
def unflag_program_redemption(
    redemption_id: UUID,
    business_id: str = Depends(get_business_id),
    city: str = Depends(get_active_city),
    db: Session = Depends(get_db),
):
    program = _my_program(db, business_id, city)
    redemption = _my_redemption(db, program, redemption_id)
    return redemption_service.unflag_redemption(db, redemption)
