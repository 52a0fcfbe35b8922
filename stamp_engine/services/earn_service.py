from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from stamp_engine import config
from stamp_engine.errors import ConcurrentUpdateError, LoyaltyValidationError
from stamp_engine.models.loyalty_earn_event import LoyaltyEarnEvent
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services.membership_service import ensure_membership, find_membership
from stamp_engine.services.presence_token_service import hash_ip, hash_token, is_token_valid
from stamp_engine.services.program_service import get_program_by_public_id
from stamp_engine.services.time_utils import local_day_bounds_utc, utcnow
from stamp_engine.services.wallet_pass_service import SYNC_EARNED, SYNC_REWARD_UNLOCKED


REASON_PROGRAM_INACTIVE = "program_inactive"
REASON_INVALID_TOKEN = "invalid_token"
REASON_TOKEN_REUSED = "token_reused"
REASON_DAILY_LIMIT = "daily_limit"
REASON_COOLDOWN = "cooldown"
REASON_MEMBERSHIP_INACTIVE = "membership_inactive"
REASON_RATE_LIMIT_USER = "rate_limit_user"
REASON_RATE_LIMIT_IP = "rate_limit_ip"
REASON_IP_VELOCITY = "ip_velocity"


@dataclass
class EarnRejection:
    reason: str
    message: str
    next_eligible_at: datetime | None = None


@dataclass
class EarnResult:
    success: bool
    new_balance: int
    threshold: int
    reward_unlocked: bool = False
    reason: str | None = None
    message: str | None = None
    proximity_message: str | None = None
    next_eligible_at: datetime | None = None
    membership_id: object = None
    earn_event_id: object = None
    wallet_event: str | None = None


def get_proximity_message(balance: int, threshold: int) -> str | None:
    remaining = threshold - balance
    if remaining <= 0:
        return "Reward available!"
    if remaining == 1:
        return "Just 1 more visit!"
    if remaining == 2:
        return "Only 2 more to go!"
    if remaining == 3:
        return "Almost there, 3 more!"
    if balance >= threshold / 2:
        return "You're over halfway!"
    return None


def earn_amount(program: LoyaltyProgram) -> int:
    if program.type == "points":
        return max(int(program.points_per_earn or 1), 1)
    return 1


# ============================================================
# CONTRÔLES (ordre fixe, premier échec gagnant)
# ============================================================

def _count_valid_earns_today(db: Session, program: LoyaltyProgram, membership_id, now: datetime) -> int:
    day_start, day_end = local_day_bounds_utc(now, program.timezone)
    return (
        db.query(func.count(LoyaltyEarnEvent.id))
        .filter(
            LoyaltyEarnEvent.membership_id == membership_id,
            LoyaltyEarnEvent.valid.is_(True),
            LoyaltyEarnEvent.earned_at >= day_start,
            LoyaltyEarnEvent.earned_at < day_end,
        )
        .scalar()
    ) or 0


def _last_valid_earn_at(db: Session, membership_id) -> datetime | None:
    return (
        db.query(func.max(LoyaltyEarnEvent.earned_at))
        .filter(LoyaltyEarnEvent.membership_id == membership_id, LoyaltyEarnEvent.valid.is_(True))
        .scalar()
    )


def _token_already_counted(db: Session, membership_id, token_hash: str) -> bool:
    return (
        db.query(LoyaltyEarnEvent.id)
        .filter(
            LoyaltyEarnEvent.membership_id == membership_id,
            LoyaltyEarnEvent.valid.is_(True),
            LoyaltyEarnEvent.token_hash == token_hash,
        )
        .first()
        is not None
    )


def check_presence(
    db: Session,
    program: LoyaltyProgram,
    membership: LoyaltyMembership | None,
    *,
    token: str,
    token_hash: str,
    now: datetime,
) -> EarnRejection | None:
    if program.status != "active":
        return EarnRejection(REASON_PROGRAM_INACTIVE, "This loyalty program is not currently active.")

    if not is_token_valid(program, token, now=now):
        return EarnRejection(REASON_INVALID_TOKEN, "Invalid QR code. Please scan the QR at the till.")

    if membership is not None and _token_already_counted(db, membership.id, token_hash):
        return EarnRejection(
            REASON_TOKEN_REUSED,
            "This QR code has already been used for a stamp. Please scan the current code at the till.",
        )

    return None


def check_earn_limits(
    db: Session,
    program: LoyaltyProgram,
    membership: LoyaltyMembership,
    *,
    ip_hash: str | None,
    now: datetime,
) -> EarnRejection | None:
    earned_today = _count_valid_earns_today(db, program, membership.id, now)
    if earned_today >= program.max_earns_per_day:
        _, day_end = local_day_bounds_utc(now, program.timezone)
        unit = "stamp" if program.max_earns_per_day == 1 else "stamps"
        return EarnRejection(
            REASON_DAILY_LIMIT,
            f"You've reached your daily limit of {program.max_earns_per_day} {unit} for today.",
            next_eligible_at=day_end,
        )

    last_earned_at = _last_valid_earn_at(db, membership.id)
    if last_earned_at is not None and program.min_gap_minutes > 0:
        next_eligible = last_earned_at + timedelta(minutes=program.min_gap_minutes)
        if now < next_eligible:
            return EarnRejection(
                REASON_COOLDOWN,
                "Too soon since your last stamp. Try again in a few minutes.",
                next_eligible_at=next_eligible,
            )

    if membership.status != "active":
        return EarnRejection(REASON_MEMBERSHIP_INACTIVE, "This loyalty card is no longer active.")

    one_hour_ago = now - timedelta(hours=1)

    user_attempts = (
        db.query(func.count(LoyaltyEarnEvent.id))
        .filter(
            LoyaltyEarnEvent.user_wallet_pass_id == membership.user_wallet_pass_id,
            LoyaltyEarnEvent.earned_at >= one_hour_ago,
        )
        .scalar()
    ) or 0
    if user_attempts >= config.EARN_RATE_LIMIT_PER_USER_PER_HOUR:
        return EarnRejection(REASON_RATE_LIMIT_USER, "Too many attempts. Please try again later.")

    if ip_hash:
        ip_attempts = (
            db.query(func.count(LoyaltyEarnEvent.id))
            .filter(LoyaltyEarnEvent.ip_hash == ip_hash, LoyaltyEarnEvent.earned_at >= one_hour_ago)
            .scalar()
        ) or 0
        if ip_attempts >= config.EARN_RATE_LIMIT_PER_IP_PER_HOUR:
            return EarnRejection(REASON_RATE_LIMIT_IP, "Too many attempts from this location.")

        # même IP qui tamponne trop de cartes différentes chez ce commerce
        velocity_start = now - timedelta(minutes=config.IP_VELOCITY_WINDOW_MINUTES)
        recent_passes = {
            row[0]
            for row in db.query(LoyaltyEarnEvent.user_wallet_pass_id)
            .filter(
                LoyaltyEarnEvent.ip_hash == ip_hash,
                LoyaltyEarnEvent.business_id == program.business_id,
                LoyaltyEarnEvent.earned_at >= velocity_start,
            )
            .distinct()
            .all()
        }
        recent_passes.add(membership.user_wallet_pass_id)
        if len(recent_passes) > config.IP_VELOCITY_THRESHOLD:
            return EarnRejection(REASON_IP_VELOCITY, "Suspicious activity detected. Please try again later.")

    return None


def _record_rejection(
    db: Session,
    program: LoyaltyProgram,
    membership: LoyaltyMembership | None,
    wallet_pass_id: str,
    rejection: EarnRejection,
    *,
    method: str,
    token_hash: str,
    ip_hash: str | None,
    now: datetime,
) -> EarnResult:
    event = LoyaltyEarnEvent(
        membership_id=membership.id if membership else None,
        program_id=program.id,
        business_id=program.business_id,
        user_wallet_pass_id=wallet_pass_id,
        earned_at=now,
        method=method,
        amount=0,
        token_hash=token_hash,
        ip_hash=ip_hash,
        valid=False,
        reason_if_invalid=rejection.reason,
    )
    db.add(event)
    db.commit()

    logger.info(
        "Earn attempt rejected",
        program_id=str(program.id),
        membership_id=str(membership.id) if membership else None,
        reason=rejection.reason,
    )

    return EarnResult(
        success=False,
        new_balance=membership.stamps_balance if membership else 0,
        threshold=program.reward_threshold,
        reason=rejection.reason,
        message=rejection.message,
        next_eligible_at=rejection.next_eligible_at,
        membership_id=membership.id if membership else None,
        earn_event_id=event.id,
    )


# ============================================================
# EARN
# ============================================================

def earn(
    db: Session,
    *,
    public_id: str,
    wallet_pass_id: str,
    token: str,
    ip: str | None = None,
    city: str | None = None,
    method: str = "counter_qr",
    now: datetime | None = None,
) -> EarnResult:
    if not public_id or not token or not (wallet_pass_id or "").strip():
        raise LoyaltyValidationError("publicId, token, and walletPassId are required")

    now = now or utcnow()
    program = get_program_by_public_id(db, public_id, city=city)
    token_hash = hash_token(token)
    ip_hash = hash_ip(ip) if ip else None

    membership = find_membership(db, program.id, wallet_pass_id)

    def reject(rejection: EarnRejection) -> EarnResult:
        return _record_rejection(
            db,
            program,
            membership,
            wallet_pass_id,
            rejection,
            method=method,
            token_hash=token_hash,
            ip_hash=ip_hash,
            now=now,
        )

    rejection = check_presence(db, program, membership, token=token, token_hash=token_hash, now=now)
    if rejection:
        return reject(rejection)

    if membership is None:
        membership, _ = ensure_membership(db, program, wallet_pass_id, now=now)

    rejection = check_earn_limits(db, program, membership, ip_hash=ip_hash, now=now)
    if rejection:
        return reject(rejection)

    return _apply_earn(
        db,
        program,
        membership,
        method=method,
        token_hash=token_hash,
        ip_hash=ip_hash,
        now=now,
    )


def _apply_earn(
    db: Session,
    program: LoyaltyProgram,
    membership: LoyaltyMembership,
    *,
    method: str,
    token_hash: str,
    ip_hash: str | None,
    now: datetime,
) -> EarnResult:
    amount = earn_amount(program)
    threshold = program.reward_threshold
    balance_before = membership.stamps_balance
    observed_last_earned_at = membership.last_earned_at

    event = LoyaltyEarnEvent(
        membership_id=membership.id,
        program_id=program.id,
        business_id=program.business_id,
        user_wallet_pass_id=membership.user_wallet_pass_id,
        earned_at=now,
        method=method,
        amount=amount,
        token_hash=token_hash,
        ip_hash=ip_hash,
        valid=True,
    )
    db.add(event)

    values = {
        "stamps_balance": LoyaltyMembership.stamps_balance + amount,
        "total_earned": LoyaltyMembership.total_earned + amount,
        "last_earned_at": now,
        "last_active_at": now,
        "points_balance": LoyaltyMembership.points_balance + amount,
        "wallet_sync_pending": True,
    }

    # garde optimiste : un earn concurrent a déjà bougé last_earned_at
    if observed_last_earned_at is None:
        guard = LoyaltyMembership.last_earned_at.is_(None)
    else:
        guard = LoyaltyMembership.last_earned_at == observed_last_earned_at

    result = db.execute(
        update(LoyaltyMembership)
        .where(LoyaltyMembership.id == membership.id, LoyaltyMembership.status == "active", guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("Concurrent earn detected; attempt rolled back", membership_id=str(membership.id))
        raise ConcurrentUpdateError()

    db.commit()
    db.refresh(membership)

    new_balance = membership.stamps_balance
    reward_unlocked = new_balance >= threshold
    crossed = balance_before < threshold <= new_balance

    next_eligible_at = None
    if _count_valid_earns_today(db, program, membership.id, now) >= program.max_earns_per_day:
        _, next_eligible_at = local_day_bounds_utc(now, program.timezone)
    elif program.min_gap_minutes > 0:
        next_eligible_at = now + timedelta(minutes=program.min_gap_minutes)

    logger.info(
        "Earn recorded",
        program_id=str(program.id),
        membership_id=str(membership.id),
        amount=amount,
        balance=new_balance,
        reward_unlocked=reward_unlocked,
    )

    return EarnResult(
        success=True,
        new_balance=new_balance,
        threshold=threshold,
        reward_unlocked=reward_unlocked,
        proximity_message=None if reward_unlocked else get_proximity_message(new_balance, threshold),
        next_eligible_at=next_eligible_at,
        membership_id=membership.id,
        earn_event_id=event.id,
        wallet_event=SYNC_REWARD_UNLOCKED if crossed else SYNC_EARNED,
    )
