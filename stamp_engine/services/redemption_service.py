from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from stamp_engine import config
from stamp_engine.errors import (
    ConcurrentUpdateError,
    InsufficientBalance,
    LoyaltyValidationError,
    NotFoundError,
    RateLimitedError,
    StateConflictError,
    TenantScopeError,
)
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.models.loyalty_redemption import LoyaltyRedemption
from stamp_engine.services.time_utils import utcnow


# ============================================================
# REDEEM (check + décrément en une seule opération conditionnelle)
# ============================================================
def redeem(
    db: Session,
    *,
    membership_id,
    wallet_pass_id: str | None = None,
    city: str | None = None,
    now: datetime | None = None,
) -> LoyaltyRedemption:
    now = now or utcnow()

    membership = db.query(LoyaltyMembership).filter(LoyaltyMembership.id == membership_id).first()
    if not membership or (wallet_pass_id is not None and membership.user_wallet_pass_id != wallet_pass_id):
        raise NotFoundError("Membership not found")

    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == membership.program_id).one()

    if city and program.city != city:
        raise TenantScopeError("City mismatch")
    if program.status != "active":
        raise StateConflictError("Program is not active", current_status=program.status)
    if membership.status != "active":
        raise StateConflictError("This loyalty card is no longer active", current_status=membership.status)

    threshold = program.reward_threshold
    # lecture indicative seulement ; la garde réelle est dans le WHERE
    if membership.stamps_balance < threshold:
        raise InsufficientBalance(balance=membership.stamps_balance, threshold=threshold)

    # une consommation par pass wallet et par fenêtre, tous programmes confondus
    window_start = now - timedelta(minutes=config.CONSUME_RATE_LIMIT_MINUTES)
    recent_consumes = (
        db.query(func.count(LoyaltyRedemption.id))
        .filter(
            LoyaltyRedemption.user_wallet_pass_id == membership.user_wallet_pass_id,
            LoyaltyRedemption.consumed_at >= window_start,
        )
        .scalar()
    ) or 0
    if recent_consumes:
        # le perdant d'une course voit d'abord le solde réel
        current_balance = (
            db.query(LoyaltyMembership.stamps_balance).filter(LoyaltyMembership.id == membership.id).scalar()
        )
        if current_balance < threshold:
            raise InsufficientBalance(balance=current_balance, threshold=threshold)
        raise RateLimitedError(
            "Please wait before redeeming again.",
            retryAfterMinutes=config.CONSUME_RATE_LIMIT_MINUTES,
        )

    values = {
        "stamps_balance": LoyaltyMembership.stamps_balance - threshold,
        "total_redeemed": LoyaltyMembership.total_redeemed + threshold,
        "last_active_at": now,
        "points_balance": LoyaltyMembership.points_balance - threshold,
        "wallet_sync_pending": True,
    }

    result = db.execute(
        update(LoyaltyMembership)
        .where(
            LoyaltyMembership.id == membership.id,
            LoyaltyMembership.status == "active",
            LoyaltyMembership.stamps_balance >= threshold,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = (
            db.query(LoyaltyMembership.stamps_balance, LoyaltyMembership.status)
            .filter(LoyaltyMembership.id == membership.id)
            .one()
        )
        logger.info(
            "Redemption lost the race",
            membership_id=str(membership.id),
            balance=current.stamps_balance,
            threshold=threshold,
        )
        if current.stamps_balance < threshold:
            raise InsufficientBalance(balance=current.stamps_balance, threshold=threshold)
        raise ConcurrentUpdateError()

    redemption = LoyaltyRedemption(
        membership_id=membership.id,
        program_id=program.id,
        business_id=program.business_id,
        user_wallet_pass_id=membership.user_wallet_pass_id,
        reward_description=program.reward_description,
        stamps_deducted=threshold,
        status="consumed",
        consumed_at=now,
        display_expires_at=now + timedelta(minutes=config.REDEMPTION_DISPLAY_WINDOW_MINUTES),
    )
    db.add(redemption)
    db.commit()
    db.refresh(redemption)
    db.refresh(membership)

    logger.info(
        "Reward redeemed",
        program_id=str(program.id),
        membership_id=str(membership.id),
        redemption_id=str(redemption.id),
        remaining=membership.stamps_balance,
    )
    return redemption


def get_redemption(db: Session, redemption_id) -> LoyaltyRedemption:
    redemption = db.query(LoyaltyRedemption).filter(LoyaltyRedemption.id == redemption_id).first()
    if not redemption:
        raise NotFoundError("Redemption not found")
    return redemption


def get_redemption_status(redemption: LoyaltyRedemption, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    remaining_ms = max(0, int((redemption.display_expires_at - now).total_seconds() * 1000))
    is_active = redemption.display_expires_at > now
    return {
        "id": str(redemption.id),
        "status": redemption.status if is_active else "expired_display",
        "rewardDescription": redemption.reward_description,
        "consumedAt": redemption.consumed_at,
        "displayExpiresAt": redemption.display_expires_at,
        "timeRemainingMs": remaining_ms,
        "isActive": is_active,
    }


def list_redemptions(
    db: Session,
    program: LoyaltyProgram,
    *,
    flagged: bool | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[LoyaltyRedemption]:
    q = db.query(LoyaltyRedemption).filter(LoyaltyRedemption.program_id == program.id)
    if flagged is True:
        q = q.filter(LoyaltyRedemption.flagged_at.isnot(None))
    elif flagged is False:
        q = q.filter(LoyaltyRedemption.flagged_at.is_(None))

    limit = max(1, min(limit, 500))
    offset = max(0, offset)

    return q.order_by(LoyaltyRedemption.consumed_at.desc()).offset(offset).limit(limit).all()


# ============================================================
# FRAUD REVIEW (n'annule ni la consommation ni le solde)
# ============================================================
def flag_redemption(
    db: Session,
    redemption: LoyaltyRedemption,
    *,
    reason: str,
    flagged_by: str | None = None,
    now: datetime | None = None,
) -> LoyaltyRedemption:
    if not (reason or "").strip():
        raise LoyaltyValidationError("A reason is required to flag a redemption")

    redemption.flagged_at = now or utcnow()
    redemption.flagged_reason = reason.strip()
    redemption.flagged_by = flagged_by
    db.commit()
    db.refresh(redemption)

    logger.info("Redemption flagged", redemption_id=str(redemption.id), flagged_by=flagged_by)
    return redemption


def unflag_redemption(db: Session, redemption: LoyaltyRedemption) -> LoyaltyRedemption:
    if redemption.flagged_at is None:
        raise StateConflictError("Redemption is not flagged", current_status=redemption.status)

    redemption.flagged_at = None
    redemption.flagged_reason = None
    redemption.flagged_by = None
    db.commit()
    db.refresh(redemption)
    return redemption
