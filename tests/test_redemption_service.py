from datetime import datetime, timedelta

import pytest

from conftest import ADMIN_ID, BUSINESS_ID, CITY, WALLETPUSH_CREDENTIALS, make_active_program
from stamp_engine.errors import (
    InsufficientBalance,
    LoyaltyValidationError,
    NotFoundError,
    RateLimitedError,
    StateConflictError,
)
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_redemption import LoyaltyRedemption
from stamp_engine.services import earn_service, program_service, redemption_service
from stamp_engine.services.presence_token_service import rotate_counter_token
from stamp_engine.services.wallet_pass_service import build_pass_field_values


WALLET = "wp-redeemer"
START = datetime(2026, 3, 2, 9, 0, 0)


def _stamp(db, program, times, wallet=WALLET):
    for i in range(times):
        now = START + timedelta(minutes=i)
        rotate_counter_token(db, program, now=now)
        result = earn_service.earn(
            db,
            public_id=program.public_id,
            wallet_pass_id=wallet,
            token=program.counter_qr_token,
            now=now,
        )
        assert result.success, result.reason
    db.expire_all()
    return db.query(LoyaltyMembership).filter(LoyaltyMembership.user_wallet_pass_id == wallet).one()


@pytest.fixture
def small_program(db):
    return make_active_program(db, reward_threshold=3, min_gap_minutes=0)


def test_redeem_deducts_threshold_and_snapshots_reward(db, small_program):
    membership = _stamp(db, small_program, 4)

    redemption = redemption_service.redeem(db, membership_id=membership.id, wallet_pass_id=WALLET, now=START)
    db.refresh(membership)

    assert redemption.stamps_deducted == 3
    assert redemption.reward_description == "Free coffee"
    assert redemption.status == "consumed"
    assert redemption.display_expires_at == START + timedelta(minutes=10)
    assert membership.stamps_balance == 1
    assert membership.total_redeemed == 3
    assert membership.stamps_balance == membership.total_earned - membership.total_redeemed
    assert membership.wallet_sync_pending is True


def test_redeem_with_insufficient_balance(db, small_program):
    membership = _stamp(db, small_program, 2)

    with pytest.raises(InsufficientBalance) as exc_info:
        redemption_service.redeem(db, membership_id=membership.id)

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["balance"] == 2
    assert exc_info.value.detail["threshold"] == 3
    assert db.query(LoyaltyRedemption).count() == 0


def test_redeem_checks_wallet_pass_ownership(db, small_program):
    membership = _stamp(db, small_program, 3)

    with pytest.raises(NotFoundError):
        redemption_service.redeem(db, membership_id=membership.id, wallet_pass_id="someone-else")


def test_redeem_on_paused_program(db, small_program):
    membership = _stamp(db, small_program, 3)
    program_service.set_program_status(db, small_program, "paused")

    with pytest.raises(StateConflictError) as exc_info:
        redemption_service.redeem(db, membership_id=membership.id)

    assert exc_info.value.current_status == "paused"


def test_double_redeem_race_only_one_wins(db, session_factory, small_program):
    membership = _stamp(db, small_program, 3)

    first = session_factory()
    second = session_factory()
    try:
        # les deux sessions lisent un solde suffisant avant toute écriture
        assert first.get(LoyaltyMembership, membership.id).stamps_balance == 3
        assert second.get(LoyaltyMembership, membership.id).stamps_balance == 3

        winner = redemption_service.redeem(first, membership_id=membership.id)

        with pytest.raises(InsufficientBalance) as exc_info:
            redemption_service.redeem(second, membership_id=membership.id)
    finally:
        first.close()
        second.close()

    assert winner.stamps_deducted == 3
    assert exc_info.value.balance == 0

    db.expire_all()
    stored = db.get(LoyaltyMembership, membership.id)
    assert stored.stamps_balance == 0
    assert stored.total_redeemed == 3
    assert db.query(LoyaltyRedemption).count() == 1


def test_reward_text_edit_does_not_rewrite_history(db, small_program):
    membership = _stamp(db, small_program, 3)
    redemption = redemption_service.redeem(db, membership_id=membership.id)

    req = program_service.submit_edit_request(
        db, business_id=BUSINESS_ID, changes={"reward_description": "Free muffin"}, city=CITY
    )
    program = program_service.activate_request(
        db, request_id=req.id, credentials=WALLETPUSH_CREDENTIALS, admin_id=ADMIN_ID, admin_city=CITY
    )
    assert program.reward_description == "Free muffin"

    db.expire_all()
    assert db.get(LoyaltyRedemption, redemption.id).reward_description == "Free coffee"


def test_redemption_display_status_expires(db, small_program):
    membership = _stamp(db, small_program, 3)
    redemption = redemption_service.redeem(db, membership_id=membership.id, now=START)

    live = redemption_service.get_redemption_status(redemption, now=START + timedelta(minutes=4))
    assert live["isActive"] is True
    assert live["status"] == "consumed"
    assert live["timeRemainingMs"] == 6 * 60 * 1000

    over = redemption_service.get_redemption_status(redemption, now=START + timedelta(minutes=11))
    assert over["isActive"] is False
    assert over["status"] == "expired_display"
    assert over["timeRemainingMs"] == 0


def test_flag_keeps_balance_and_consumption(db, small_program):
    membership = _stamp(db, small_program, 3)
    redemption = redemption_service.redeem(db, membership_id=membership.id)

    flagged = redemption_service.flag_redemption(db, redemption, reason="Staff did not see the screen", flagged_by="admin-1")

    assert flagged.flagged_at is not None
    assert flagged.flagged_reason == "Staff did not see the screen"
    assert flagged.status == "consumed"
    db.refresh(membership)
    assert membership.stamps_balance == 0

    assert redemption_service.list_redemptions(db, small_program, flagged=True) == [flagged]
    assert redemption_service.list_redemptions(db, small_program, flagged=False) == []

    unflagged = redemption_service.unflag_redemption(db, flagged)
    assert unflagged.flagged_at is None

    with pytest.raises(StateConflictError):
        redemption_service.unflag_redemption(db, unflagged)


def test_flag_requires_reason(db, small_program):
    membership = _stamp(db, small_program, 3)
    redemption = redemption_service.redeem(db, membership_id=membership.id)

    with pytest.raises(LoyaltyValidationError):
        redemption_service.flag_redemption(db, redemption, reason="   ")


def test_second_consume_inside_window_is_rate_limited(db, small_program):
    membership = _stamp(db, small_program, 6)

    redemption_service.redeem(db, membership_id=membership.id, now=START)

    with pytest.raises(RateLimitedError) as exc_info:
        redemption_service.redeem(db, membership_id=membership.id, now=START + timedelta(seconds=5))

    assert exc_info.value.status_code == 429
    assert exc_info.value.detail["code"] == "rate_limited"
    db.refresh(membership)
    assert membership.stamps_balance == 3
    assert db.query(LoyaltyRedemption).count() == 1

    later = redemption_service.redeem(db, membership_id=membership.id, now=START + timedelta(minutes=5, seconds=1))
    db.refresh(membership)
    assert later.stamps_deducted == 3
    assert membership.stamps_balance == 0


def test_switch_to_points_keeps_one_balance(db, small_program):
    membership = _stamp(db, small_program, 3)
    # ligne antérieure à l'alignement des deux colonnes
    membership.points_balance = 0
    db.commit()

    req = program_service.submit_edit_request(db, business_id=BUSINESS_ID, changes={"type": "points"}, city=CITY)
    program = program_service.activate_request(
        db, request_id=req.id, credentials=WALLETPUSH_CREDENTIALS, admin_id=ADMIN_ID, admin_city=CITY
    )
    assert program.type == "points"
    db.refresh(membership)
    assert membership.points_balance == 3

    redemption_service.redeem(db, membership_id=membership.id, now=START)
    db.refresh(membership)

    assert membership.stamps_balance == 0
    assert membership.points_balance == 0
    fields = build_pass_field_values(program, membership)
    assert fields["Points"] == "0"
    assert fields["Status"] == "0/3 Stamps"
