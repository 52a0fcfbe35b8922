from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from stamp_engine.db import get_db
from stamp_engine.deps.wallet import get_session_factory, get_wallet_client
from stamp_engine.errors import NotFoundError
from stamp_engine.schemas.loyalty_earn import EarnRequest
from stamp_engine.schemas.loyalty_membership import JoinRequest
from stamp_engine.schemas.loyalty_redemption import RedeemRequest
from stamp_engine.services import earn_service, membership_service, redemption_service
from stamp_engine.services.wallet_pass_service import SYNC_REDEEMED, WalletPushClient, run_wallet_sync


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


# code HTTP par motif de refus ; les autres refus restent en 200 success=false
EARN_REJECTION_STATUS = {
    earn_service.REASON_PROGRAM_INACTIVE: 400,
    earn_service.REASON_INVALID_TOKEN: 403,
    earn_service.REASON_TOKEN_REUSED: 403,
    earn_service.REASON_MEMBERSHIP_INACTIVE: 403,
    earn_service.REASON_RATE_LIMIT_USER: 429,
    earn_service.REASON_RATE_LIMIT_IP: 429,
    earn_service.REASON_IP_VELOCITY: 429,
}


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


# ============================================================
# JOIN
# ============================================================
@router.post("/join")
def join(
    payload: JoinRequest,
    x_city: str | None = Header(default=None, alias="X-City"),
    wallet_client: WalletPushClient = Depends(get_wallet_client),
    db: Session = Depends(get_db),
):
    result = membership_service.join_program(
        db,
        public_id=payload.publicId,
        wallet_pass_id=payload.walletPassId,
        city=x_city,
        profile={
            "first_name": payload.firstName,
            "last_name": payload.lastName,
            "email": payload.email,
            "date_of_birth": payload.dateOfBirth,
        },
        wallet_client=wallet_client,
    )

    membership = result.membership
    issued = result.wallet_pass
    return {
        "membershipId": str(membership.id),
        "alreadyMember": result.already_member,
        "stampsBalance": membership.stamps_balance,
        "walletpushSerial": membership.walletpush_serial,
        "appleUrl": issued.apple_url if issued else None,
        "googleUrl": issued.google_url if issued else None,
        "hasWalletPass": membership.walletpush_serial is not None,
    }


# ============================================================
# EARN
# ============================================================
@router.post("/earn")
def earn(
    payload: EarnRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    x_city: str | None = Header(default=None, alias="X-City"),
    wallet_client: WalletPushClient = Depends(get_wallet_client),
    session_factory=Depends(get_session_factory),
    db: Session = Depends(get_db),
):
    result = earn_service.earn(
        db,
        public_id=payload.publicId,
        wallet_pass_id=payload.walletPassId,
        token=payload.token,
        ip=_client_ip(request),
        city=x_city,
        method=payload.method or "counter_qr",
    )

    body = {
        "success": result.success,
        "newBalance": result.new_balance,
        "threshold": result.threshold,
        "rewardUnlocked": result.reward_unlocked,
        "proximityMessage": result.proximity_message,
        "nextEligibleAt": result.next_eligible_at.isoformat() if result.next_eligible_at else None,
        "membershipId": str(result.membership_id) if result.membership_id else None,
    }

    if not result.success:
        body["reason"] = result.reason
        body["message"] = result.message
        return JSONResponse(status_code=EARN_REJECTION_STATUS.get(result.reason, 200), content=body)

    background_tasks.add_task(
        run_wallet_sync, session_factory, result.membership_id, wallet_client, result.wallet_event
    )
    return body


# ============================================================
# REDEMPTION
# ============================================================
@router.post("/redemption/consume")
def consume_redemption(
    payload: RedeemRequest,
    background_tasks: BackgroundTasks,
    x_city: str | None = Header(default=None, alias="X-City"),
    wallet_client: WalletPushClient = Depends(get_wallet_client),
    session_factory=Depends(get_session_factory),
    db: Session = Depends(get_db),
):
    redemption = redemption_service.redeem(
        db,
        membership_id=payload.membershipId,
        wallet_pass_id=payload.walletPassId,
        city=x_city,
    )
    membership = membership_service.get_membership(db, redemption.membership_id)

    background_tasks.add_task(run_wallet_sync, session_factory, membership.id, wallet_client, SYNC_REDEEMED)

    return {
        "success": True,
        "redemptionId": str(redemption.id),
        "rewardDescription": redemption.reward_description,
        "stampsDeducted": redemption.stamps_deducted,
        "newBalance": membership.stamps_balance,
        "consumedAt": redemption.consumed_at.isoformat(),
        "displayExpiresAt": redemption.display_expires_at.isoformat(),
    }


@router.get("/redemption/{redemption_id}")
def get_redemption_status(
    redemption_id: UUID,
    walletPassId: str | None = None,
    db: Session = Depends(get_db),
):
    redemption = redemption_service.get_redemption(db, redemption_id)
    if walletPassId is not None and redemption.user_wallet_pass_id != walletPassId:
        raise NotFoundError("Redemption not found")
    return redemption_service.get_redemption_status(redemption)


# ============================================================
# MEMBER VIEW
# ============================================================
@router.get("/memberships/{wallet_pass_id}")
def list_my_memberships(wallet_pass_id: str, db: Session = Depends(get_db)):
    rows = membership_service.list_wallet_memberships(db, wallet_pass_id)
    return {
        "memberships": [
            {
                "membershipId": str(membership.id),
                "programId": str(program.id),
                "publicId": program.public_id,
                "businessName": program.business_name,
                "programName": program.program_name,
                "type": program.type,
                "stampLabel": program.stamp_label,
                "stampsBalance": membership.stamps_balance,
                "pointsBalance": membership.points_balance,
                "threshold": program.reward_threshold,
                "rewardDescription": program.reward_description,
                "rewardAvailable": membership.stamps_balance >= program.reward_threshold,
                "status": membership.status,
                "programStatus": program.status,
                "lastEarnedAt": membership.last_earned_at.isoformat() if membership.last_earned_at else None,
            }
            for membership, program in rows
        ]
    }
