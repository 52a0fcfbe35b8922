import csv
import io
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stamp_engine.config import AVG_REWARD_VALUE, NEAR_REWARD_MARGIN
from stamp_engine.errors import LoyaltyValidationError, NotFoundError, StateConflictError
from stamp_engine.models.app_user import AppUser
from stamp_engine.models.loyalty_earn_event import LoyaltyEarnEvent
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.models.loyalty_redemption import LoyaltyRedemption
from stamp_engine.services.program_service import get_program_by_public_id
from stamp_engine.services.time_utils import local_month_start_utc, utcnow
from stamp_engine.services.wallet_pass_service import (
    IssuedPass,
    WalletPushClient,
    build_pass_field_values,
    has_walletpush_credentials,
)


JOINABLE_STATUSES = {"active", "submitted"}


@dataclass
class JoinResult:
    membership: LoyaltyMembership
    already_member: bool
    wallet_pass: IssuedPass | None = None


# ============================================================
# JOIN
# ============================================================

def _issue_membership_pass(
    db: Session,
    program: LoyaltyProgram,
    membership: LoyaltyMembership,
    profile: dict,
    wallet_client: WalletPushClient | None,
) -> IssuedPass | None:
    if wallet_client is None or not has_walletpush_credentials(program):
        return None

    issued = wallet_client.issue_pass(
        program,
        {
            "first_name": profile.get("first_name") or "Loyalty",
            "last_name": profile.get("last_name") or "Member",
            "email": profile.get("email") or f"{membership.user_wallet_pass_id}@pass.invalid",
        },
        build_pass_field_values(program, membership),
    )
    if issued:
        membership.walletpush_serial = issued.serial
        db.commit()
        db.refresh(membership)
    return issued


def find_membership(db: Session, program_id, wallet_pass_id: str) -> LoyaltyMembership | None:
    return (
        db.query(LoyaltyMembership)
        .filter(
            LoyaltyMembership.program_id == program_id,
            LoyaltyMembership.user_wallet_pass_id == wallet_pass_id,
        )
        .first()
    )


def ensure_membership(
    db: Session,
    program: LoyaltyProgram,
    wallet_pass_id: str,
    *,
    now: datetime | None = None,
) -> tuple[LoyaltyMembership, bool]:
    """
    Insert d'abord, relecture sur conflit d'unicité : deux appareils
    qui rejoignent au même instant obtiennent la même adhésion.
    """
    now = now or utcnow()
    program_id = program.id

    membership = LoyaltyMembership(
        program_id=program_id,
        user_wallet_pass_id=wallet_pass_id,
        joined_at=now,
        last_active_at=now,
    )
    db.add(membership)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_membership(db, program_id, wallet_pass_id)
        if existing is None:
            raise
        return existing, False

    db.refresh(membership)
    logger.info("Loyalty membership created", program_id=str(program_id), membership_id=str(membership.id))
    return membership, True


def join_program(
    db: Session,
    *,
    public_id: str,
    wallet_pass_id: str,
    city: str | None = None,
    profile: dict | None = None,
    wallet_client: WalletPushClient | None = None,
    now: datetime | None = None,
) -> JoinResult:
    if not public_id or not (wallet_pass_id or "").strip():
        raise LoyaltyValidationError("publicId and walletPassId are required")

    program = get_program_by_public_id(db, public_id, city=city)
    if program.status not in JOINABLE_STATUSES:
        raise NotFoundError("Program not found")

    membership, created = ensure_membership(db, program, wallet_pass_id, now=now)
    profile = profile or {}

    if not created:
        # émission ratée lors d'un premier join : on retente
        issued = None
        if membership.walletpush_serial is None:
            issued = _issue_membership_pass(db, program, membership, profile, wallet_client)
        return JoinResult(membership=membership, already_member=True, wallet_pass=issued)

    if profile.get("date_of_birth"):
        db.query(AppUser).filter(
            AppUser.wallet_pass_id == wallet_pass_id,
            AppUser.date_of_birth.is_(None),
        ).update({"date_of_birth": profile["date_of_birth"]}, synchronize_session=False)
        db.commit()

    issued = _issue_membership_pass(db, program, membership, profile, wallet_client)
    return JoinResult(membership=membership, already_member=False, wallet_pass=issued)


# ============================================================
# LOOKUPS / STATUS
# ============================================================

def get_membership(db: Session, membership_id) -> LoyaltyMembership:
    membership = db.query(LoyaltyMembership).filter(LoyaltyMembership.id == membership_id).first()
    if not membership:
        raise NotFoundError("Membership not found")
    return membership


def list_wallet_memberships(db: Session, wallet_pass_id: str) -> list[tuple[LoyaltyMembership, LoyaltyProgram]]:
    return (
        db.query(LoyaltyMembership, LoyaltyProgram)
        .join(LoyaltyProgram, LoyaltyProgram.id == LoyaltyMembership.program_id)
        .filter(LoyaltyMembership.user_wallet_pass_id == wallet_pass_id)
        .order_by(LoyaltyMembership.last_active_at.desc())
        .all()
    )


def set_membership_status(db: Session, membership: LoyaltyMembership, status: str) -> LoyaltyMembership:
    if status not in {"active", "inactive"}:
        raise LoyaltyValidationError("status must be 'active' or 'inactive'", field="status")
    if membership.status == status:
        raise StateConflictError(f"Membership is already {status}", current_status=membership.status)

    membership.status = status
    db.commit()
    db.refresh(membership)
    logger.info("Loyalty membership status changed", membership_id=str(membership.id), status=status)
    return membership


# ============================================================
# CRM : LISTE / EXPORT
# ============================================================

def _mask_wallet_pass_id(wallet_pass_id: str | None) -> str | None:
    if not wallet_pass_id:
        return None
    return f"...{wallet_pass_id[-4:]}"


def list_members(
    db: Session,
    program: LoyaltyProgram,
    *,
    status: str | None = None,
    since_days: int | None = None,
    now: datetime | None = None,
) -> list[dict]:
    now = now or utcnow()

    q = db.query(LoyaltyMembership).filter(LoyaltyMembership.program_id == program.id)
    if status in {"active", "inactive"}:
        q = q.filter(LoyaltyMembership.status == status)
    if since_days and since_days > 0:
        q = q.filter(LoyaltyMembership.last_active_at >= now - timedelta(days=since_days))
    members = q.order_by(LoyaltyMembership.joined_at.desc()).all()

    # pas de FK vers app_users : lookup groupé par id de pass wallet
    wallet_pass_ids = sorted({m.user_wallet_pass_id for m in members if m.user_wallet_pass_id})
    users_by_pass = {}
    if wallet_pass_ids:
        users = db.query(AppUser).filter(AppUser.wallet_pass_id.in_(wallet_pass_ids)).all()
        users_by_pass = {u.wallet_pass_id: u for u in users}

    rows = []
    for m in members:
        user = users_by_pass.get(m.user_wallet_pass_id)
        display_name = "Anonymous"
        if user:
            display_name = f"{user.first_name or ''} {user.last_name or ''}".strip() or "Anonymous"
        rows.append(
            {
                "id": str(m.id),
                "display_name": display_name,
                "wallet_pass_id_masked": _mask_wallet_pass_id(m.user_wallet_pass_id),
                "email": user.email if user else None,
                "joined_at": m.joined_at,
                "last_active_at": m.last_active_at,
                "total_earned": m.total_earned,
                "stamps_balance": m.stamps_balance,
                "total_redeemed": m.total_redeemed,
                "status": m.status,
            }
        )
    return rows


def members_to_csv(rows: list[dict]) -> str:
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(["Name", "Email", "Joined", "Last Active", "Total Earned", "Balance", "Redemptions", "Status"])
    for r in rows:
        writer.writerow(
            [
                r["display_name"],
                r["email"] or "",
                r["joined_at"].date().isoformat() if r["joined_at"] else "",
                r["last_active_at"].date().isoformat() if r["last_active_at"] else "",
                r["total_earned"],
                r["stamps_balance"],
                r["total_redeemed"],
                r["status"],
            ]
        )
    return out.getvalue()


def members_csv_filename(today: date) -> str:
    return f"loyalty-members-{today.isoformat()}.csv"


# ============================================================
# AGRÉGATS
# ============================================================

def program_summary(db: Session, program: LoyaltyProgram, *, now: datetime | None = None) -> dict:
    """
    Le solde courant fait foi pour l'état présent, les ledgers
    (earn events / redemptions) pour l'historique.
    """
    now = now or utcnow()
    month_start = local_month_start_utc(now, program.timezone)

    active_members = (
        db.query(func.count(LoyaltyMembership.id))
        .filter(LoyaltyMembership.program_id == program.id, LoyaltyMembership.status == "active")
        .scalar()
    ) or 0

    visits_this_month = (
        db.query(func.count(LoyaltyEarnEvent.id))
        .filter(
            LoyaltyEarnEvent.program_id == program.id,
            LoyaltyEarnEvent.valid.is_(True),
            LoyaltyEarnEvent.earned_at >= month_start,
        )
        .scalar()
    ) or 0

    rejected_earns_this_month = (
        db.query(func.count(LoyaltyEarnEvent.id))
        .filter(
            LoyaltyEarnEvent.program_id == program.id,
            LoyaltyEarnEvent.valid.is_(False),
            LoyaltyEarnEvent.earned_at >= month_start,
        )
        .scalar()
    ) or 0

    redeemed_this_month = (
        db.query(func.count(LoyaltyRedemption.id))
        .filter(LoyaltyRedemption.program_id == program.id, LoyaltyRedemption.consumed_at >= month_start)
        .scalar()
    ) or 0

    threshold = program.reward_threshold
    near_reward = (
        db.query(func.count(LoyaltyMembership.id))
        .filter(
            LoyaltyMembership.program_id == program.id,
            LoyaltyMembership.status == "active",
            LoyaltyMembership.stamps_balance >= max(threshold - NEAR_REWARD_MARGIN, 1),
            LoyaltyMembership.stamps_balance < threshold,
        )
        .scalar()
    ) or 0

    reward_ready = (
        db.query(func.count(LoyaltyMembership.id))
        .filter(
            LoyaltyMembership.program_id == program.id,
            LoyaltyMembership.status == "active",
            LoyaltyMembership.stamps_balance >= threshold,
        )
        .scalar()
    ) or 0

    flagged = (
        db.query(func.count(LoyaltyRedemption.id))
        .filter(LoyaltyRedemption.program_id == program.id, LoyaltyRedemption.flagged_at.isnot(None))
        .scalar()
    ) or 0

    return {
        "activeMembers": active_members,
        "visitsThisMonth": visits_this_month,
        "rewardsRedeemedThisMonth": redeemed_this_month,
        "estimatedValueGivenAway": round(redeemed_this_month * AVG_REWARD_VALUE, 2),
        "avgVisitsPerMember": round(visits_this_month / active_members, 1) if active_members else 0,
        "membersNearReward": near_reward,
        "membersWithRewardReady": reward_ready,
        "flaggedRedemptions": flagged,
        "rejectedEarnsThisMonth": rejected_earns_this_month,
    }


def check_ledger_integrity(db: Session, program: LoyaltyProgram) -> list[dict]:
    earned_by_membership = dict(
        db.query(LoyaltyEarnEvent.membership_id, func.coalesce(func.sum(LoyaltyEarnEvent.amount), 0))
        .filter(LoyaltyEarnEvent.program_id == program.id, LoyaltyEarnEvent.valid.is_(True))
        .group_by(LoyaltyEarnEvent.membership_id)
        .all()
    )
    redeemed_by_membership = dict(
        db.query(LoyaltyRedemption.membership_id, func.coalesce(func.sum(LoyaltyRedemption.stamps_deducted), 0))
        .filter(LoyaltyRedemption.program_id == program.id)
        .group_by(LoyaltyRedemption.membership_id)
        .all()
    )

    memberships = db.query(LoyaltyMembership).filter(LoyaltyMembership.program_id == program.id).all()

    discrepancies = []
    for m in memberships:
        ledger_earned = int(earned_by_membership.get(m.id, 0) or 0)
        ledger_redeemed = int(redeemed_by_membership.get(m.id, 0) or 0)

        issues = []
        if m.stamps_balance != m.total_earned - m.total_redeemed:
            issues.append("balance_counter_mismatch")
        if m.stamps_balance < 0:
            issues.append("negative_balance")
        if m.points_balance != m.stamps_balance:
            issues.append("points_mirror_mismatch")
        if ledger_earned != m.total_earned:
            issues.append("earn_ledger_mismatch")
        if ledger_redeemed != m.total_redeemed:
            issues.append("redemption_ledger_mismatch")

        if issues:
            entry = {
                "membershipId": str(m.id),
                "issues": issues,
                "stampsBalance": m.stamps_balance,
                "totalEarned": m.total_earned,
                "totalRedeemed": m.total_redeemed,
                "ledgerEarned": ledger_earned,
                "ledgerRedeemed": ledger_redeemed,
            }
            logger.warning("Loyalty ledger discrepancy", program_id=str(program.id), **entry)
            discrepancies.append(entry)

    return discrepancies
