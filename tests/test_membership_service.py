from datetime import date, datetime, timedelta

import pytest

from conftest import FakeWalletClient, make_active_program
from stamp_engine.errors import LoyaltyValidationError, NotFoundError, StateConflictError
from stamp_engine.models.app_user import AppUser
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services import earn_service, membership_service, program_service, redemption_service
from stamp_engine.services.presence_token_service import rotate_counter_token


NOW = datetime(2026, 5, 20, 12, 0, 0)


def _join(db, program, wallet, wallet_client=None, **profile):
    return membership_service.join_program(
        db,
        public_id=program.public_id,
        wallet_pass_id=wallet,
        profile=profile,
        wallet_client=wallet_client,
        now=NOW,
    )


def _earn_n(db, program, wallet, n, start=NOW):
    for i in range(n):
        now = start + timedelta(minutes=i)
        rotate_counter_token(db, program, now=now)
        earn_service.earn(
            db, public_id=program.public_id, wallet_pass_id=wallet, token=program.counter_qr_token, now=now
        )


def test_join_is_idempotent(db, active_program):
    first = _join(db, active_program, "wp-1")
    second = _join(db, active_program, "wp-1")

    assert first.already_member is False
    assert second.already_member is True
    assert second.membership.id == first.membership.id
    assert db.query(LoyaltyMembership).count() == 1


def test_concurrent_join_resolves_to_existing_row(session_factory, active_program):
    a = session_factory()
    b = session_factory()
    try:
        program_a = a.get(LoyaltyProgram, active_program.id)
        program_b = b.get(LoyaltyProgram, active_program.id)

        created_a, was_created_a = membership_service.ensure_membership(a, program_a, "wp-race", now=NOW)
        created_b, was_created_b = membership_service.ensure_membership(b, program_b, "wp-race", now=NOW)

        assert was_created_a is True
        assert was_created_b is False
        assert created_b.id == created_a.id
        assert b.query(LoyaltyMembership).count() == 1
    finally:
        a.close()
        b.close()


def test_join_requires_ids(db, active_program):
    with pytest.raises(LoyaltyValidationError):
        _join(db, active_program, "")


def test_cannot_join_draft_program(db):
    program = program_service.create_draft(db, business_id="biz-draft", business_name="Draft Deli", city="bristol")

    with pytest.raises(NotFoundError):
        _join(db, program, "wp-1")


def test_join_issues_wallet_pass_with_initial_fields(db, active_program):
    client = FakeWalletClient()

    result = _join(db, active_program, "wp-1", wallet_client=client, first_name="Ada", last_name="L", email="ada@example.com")

    assert result.wallet_pass.serial == "serial-1"
    assert result.membership.walletpush_serial == "serial-1"
    issued = client.issued[0]
    assert issued["member"] == {"first_name": "Ada", "last_name": "L", "email": "ada@example.com"}
    assert issued["fields"]["Points"] == "0"
    assert issued["fields"]["Status"] == "0/10 Stamps"
    assert issued["fields"]["Reward"] == "Free coffee"


def test_failed_issuance_still_creates_membership(db, active_program):
    client = FakeWalletClient(issue=False)

    result = _join(db, active_program, "wp-1", wallet_client=client)

    assert result.wallet_pass is None
    assert result.membership.walletpush_serial is None
    assert result.already_member is False


def test_join_fills_missing_date_of_birth(db, active_program):
    db.add(AppUser(wallet_pass_id="wp-1", first_name="Ada"))
    db.commit()

    _join(db, active_program, "wp-1", date_of_birth=date(1990, 4, 1))

    user = db.query(AppUser).filter(AppUser.wallet_pass_id == "wp-1").one()
    db.refresh(user)
    assert user.date_of_birth == date(1990, 4, 1)


def test_member_status_toggle(db, active_program):
    membership = _join(db, active_program, "wp-1").membership

    inactive = membership_service.set_membership_status(db, membership, "inactive")
    assert inactive.status == "inactive"

    with pytest.raises(StateConflictError):
        membership_service.set_membership_status(db, membership, "inactive")
    with pytest.raises(LoyaltyValidationError):
        membership_service.set_membership_status(db, membership, "deleted")


def test_list_members_resolves_names_by_wallet_pass(db, active_program):
    db.add(AppUser(wallet_pass_id="wp-named-1234", first_name="Grace", last_name="Hopper", email="grace@example.com"))
    db.commit()
    _join(db, active_program, "wp-named-1234")
    _join(db, active_program, "wp-anon-9876")

    rows = membership_service.list_members(db, active_program, now=NOW)
    by_mask = {r["wallet_pass_id_masked"]: r for r in rows}

    assert by_mask["...1234"]["display_name"] == "Grace Hopper"
    assert by_mask["...1234"]["email"] == "grace@example.com"
    assert by_mask["...9876"]["display_name"] == "Anonymous"

    csv_text = membership_service.members_to_csv(rows)
    lines = csv_text.strip().split("\n")
    assert lines[0] == "Name,Email,Joined,Last Active,Total Earned,Balance,Redemptions,Status"
    assert len(lines) == 3
    assert "Grace Hopper,grace@example.com,2026-05-20" in csv_text
    assert membership_service.members_csv_filename(date(2026, 5, 20)) == "loyalty-members-2026-05-20.csv"


def test_list_members_filters(db, active_program):
    m1 = _join(db, active_program, "wp-1").membership
    _join(db, active_program, "wp-2")
    membership_service.set_membership_status(db, m1, "inactive")

    assert len(membership_service.list_members(db, active_program, status="inactive", now=NOW)) == 1
    assert len(membership_service.list_members(db, active_program, since_days=7, now=NOW + timedelta(days=30))) == 0


def test_program_summary(db):
    program = make_active_program(db, reward_threshold=3, min_gap_minutes=0)
    _earn_n(db, program, "wp-ready", 3)
    _earn_n(db, program, "wp-near", 2, start=NOW + timedelta(minutes=10))
    _earn_n(db, program, "wp-redeemed", 3, start=NOW + timedelta(minutes=20))
    redeemed = db.query(LoyaltyMembership).filter(LoyaltyMembership.user_wallet_pass_id == "wp-redeemed").one()
    redemption_service.redeem(db, membership_id=redeemed.id, now=NOW + timedelta(minutes=30))
    earn_service.earn(db, public_id=program.public_id, wallet_pass_id="wp-near", token="bad", now=NOW + timedelta(minutes=31))

    summary = membership_service.program_summary(db, program, now=NOW + timedelta(hours=1))

    assert summary["activeMembers"] == 3
    assert summary["visitsThisMonth"] == 8
    assert summary["rewardsRedeemedThisMonth"] == 1
    assert summary["estimatedValueGivenAway"] == 3.0
    assert summary["avgVisitsPerMember"] == round(8 / 3, 1)
    assert summary["membersNearReward"] == 1
    assert summary["membersWithRewardReady"] == 1
    assert summary["flaggedRedemptions"] == 0
    assert summary["rejectedEarnsThisMonth"] == 1


def test_integrity_check_detects_tampered_balance(db, active_program):
    _earn_n(db, active_program, "wp-1", 2)
    assert membership_service.check_ledger_integrity(db, active_program) == []

    membership = db.query(LoyaltyMembership).one()
    membership.stamps_balance = 5
    db.commit()

    issues = membership_service.check_ledger_integrity(db, active_program)

    assert len(issues) == 1
    assert issues[0]["issues"] == ["balance_counter_mismatch", "points_mirror_mismatch"]
    assert issues[0]["ledgerEarned"] == 2


def test_rejoin_retries_failed_pass_issuance(db, active_program):
    first = _join(db, active_program, "wp-1", wallet_client=FakeWalletClient(issue=False))
    assert first.membership.walletpush_serial is None

    client = FakeWalletClient()
    retried = _join(db, active_program, "wp-1", wallet_client=client, first_name="Ada")

    assert retried.already_member is True
    assert retried.membership.id == first.membership.id
    assert retried.wallet_pass.serial == "serial-1"
    assert retried.membership.walletpush_serial == "serial-1"
    assert client.issued[0]["member"]["first_name"] == "Ada"

    again = _join(db, active_program, "wp-1", wallet_client=client)
    assert again.wallet_pass is None
    assert len(client.issued) == 1
