from dataclasses import dataclass
from datetime import datetime

import httpx
from loguru import logger
from sqlalchemy import update
from sqlalchemy.orm import Session

from stamp_engine import config
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services.time_utils import utcnow


# événements métier qui déclenchent une mise à jour du pass
SYNC_EARNED = "earned"
SYNC_REWARD_UNLOCKED = "reward_unlocked"
SYNC_REDEEMED = "redeemed"


@dataclass
class IssuedPass:
    serial: str
    apple_url: str | None = None
    google_url: str | None = None


def has_walletpush_credentials(program: LoyaltyProgram) -> bool:
    return bool(
        program.walletpush_template_id
        and program.walletpush_api_key
        and program.walletpush_pass_type_id
    )


def build_pass_field_values(program: LoyaltyProgram, membership: LoyaltyMembership) -> dict[str, str]:
    """
    Valeurs des champs du template. Le nom de champ WalletPush est
    toujours "Points", le libellé vient de stamp_label.
    """
    balance = membership.stamps_balance or 0
    return {
        "Points": str(balance),
        "Threshold": str(program.reward_threshold),
        "Status": f"{balance}/{program.reward_threshold} {program.stamp_label}",
        "Reward": program.reward_description,
    }


def _direct_apple_url(raw: str) -> str:
    # /api/pass-install/{serial} (page web) -> /api/apple-pass/{serial}/download (.pkpass)
    if "/api/pass-install/" in raw:
        return raw.replace("/api/pass-install/", "/api/apple-pass/") + "/download"
    return raw


class WalletPushClient:
    """Seul point d'appel vers le fournisseur de pass wallet. Ne lève jamais."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or config.WALLETPUSH_BASE_URL).rstrip("/")
        self._timeout = timeout or config.WALLETPUSH_TIMEOUT_SECONDS
        self._http_client = http_client

    def _request(self, method: str, url: str, *, api_key: str, payload: dict) -> httpx.Response:
        headers = {"Authorization": api_key, "Content-Type": "application/json"}
        if self._http_client is not None:
            return self._http_client.request(method, url, headers=headers, json=payload)
        with httpx.Client(timeout=self._timeout) as client:
            return client.request(method, url, headers=headers, json=payload)

    def issue_pass(self, program: LoyaltyProgram, member: dict, initial_fields: dict[str, str]) -> IssuedPass | None:
        url = f"{self._base_url}/templates/{program.walletpush_template_id}/pass"
        # les noms de champ doivent correspondre exactement aux placeholders du template
        body = {
            **initial_fields,
            "First_Name": member.get("first_name"),
            "Last_Name": member.get("last_name"),
            "Email": member.get("email"),
        }

        try:
            response = self._request("POST", url, api_key=program.walletpush_api_key, payload=body)
            if response.status_code >= 400:
                logger.warning(
                    "WalletPush issue_pass failed",
                    status_code=response.status_code,
                    template_id=program.walletpush_template_id,
                    body=response.text[:500],
                )
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("WalletPush issue_pass error", template_id=program.walletpush_template_id, error=str(exc))
            return None

        serial = data.get("serialNumber") or data.get("serial") or data.get("id")
        if not serial:
            logger.warning("WalletPush issue_pass returned no serial", template_id=program.walletpush_template_id)
            return None

        apple = data.get("apple") or {}
        google = data.get("google") or {}
        raw_apple_url = data.get("appleUrl") or data.get("apple_url") or apple.get("downloadUrl") or ""
        google_url = data.get("googleUrl") or data.get("google_url") or google.get("saveUrl")

        logger.info("WalletPush pass issued", serial=serial, template_id=program.walletpush_template_id)
        return IssuedPass(
            serial=str(serial),
            apple_url=_direct_apple_url(raw_apple_url) or None,
            google_url=google_url or None,
        )

    def update_pass_field(
        self,
        program: LoyaltyProgram,
        serial: str,
        field_name: str,
        value: str,
        push: bool = False,
    ) -> bool:
        """Ne mettre push=True que sur le dernier champ d'un lot (une seule notification)."""
        url = f"{self._base_url}/passes/{program.walletpush_pass_type_id}/{serial}/values/{field_name}"
        try:
            response = self._request(
                "PUT",
                url,
                api_key=program.walletpush_api_key,
                payload={"value": value, "push": push},
            )
        except httpx.HTTPError as exc:
            logger.warning("WalletPush update_field error", field=field_name, serial=serial, error=str(exc))
            return False

        if response.status_code >= 400:
            logger.warning(
                "WalletPush update_field failed",
                status_code=response.status_code,
                field=field_name,
                serial=serial,
                push=push,
                body=response.text[:500],
            )
            return False
        return True


# ============================================================
# SYNC LEDGER -> PASS
# ============================================================

def _field_batch(program: LoyaltyProgram, membership: LoyaltyMembership, event: str | None) -> list[tuple[str, str]]:
    values = build_pass_field_values(program, membership)

    if event == SYNC_REWARD_UNLOCKED:
        return [
            ("Points", values["Points"]),
            ("Status", "Reward Available!"),
            ("Last_Message", f"You earned a free {program.reward_description} at {program.business_name}!"),
        ]
    if event == SYNC_REDEEMED:
        return [
            ("Points", values["Points"]),
            ("Status", "Reward Redeemed!"),
            ("Last_Message", f"You redeemed {program.reward_description}!"),
        ]
    if event == SYNC_EARNED:
        return [("Points", values["Points"]), ("Status", values["Status"])]

    # réconciliation : état complet, sans notification
    return list(values.items())


def sync_membership(
    db: Session,
    membership_id,
    client: WalletPushClient,
    *,
    event: str | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Recalcule les champs depuis le ledger et les pousse vers le pass.
    Le flag wallet_sync_pending n'est levé que si toutes les écritures
    ont réussi et que le solde n'a pas bougé entre-temps.
    """
    now = now or utcnow()

    membership = db.query(LoyaltyMembership).filter(LoyaltyMembership.id == membership_id).first()
    if membership is None:
        return False
    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == membership.program_id).one()

    if not has_walletpush_credentials(program) or not membership.walletpush_serial:
        return False

    batch = _field_batch(program, membership, event)
    ok = True
    for i, (field_name, value) in enumerate(batch):
        push = event is not None and i == len(batch) - 1
        ok = client.update_pass_field(program, membership.walletpush_serial, field_name, value, push) and ok

    if not ok:
        logger.warning(
            "Wallet pass sync incomplete; left pending for reconciliation",
            membership_id=str(membership.id),
            event=event,
        )
        return False

    db.execute(
        update(LoyaltyMembership)
        .where(
            LoyaltyMembership.id == membership.id,
            LoyaltyMembership.stamps_balance == membership.stamps_balance,
            LoyaltyMembership.total_earned == membership.total_earned,
            LoyaltyMembership.total_redeemed == membership.total_redeemed,
        )
        .values(wallet_sync_pending=False, wallet_synced_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return True


def run_wallet_sync(session_factory, membership_id, client: WalletPushClient, event: str | None = None) -> None:
    """Tâche de fond lancée après le commit du ledger."""
    db = session_factory()
    try:
        sync_membership(db, membership_id, client, event=event)
    except Exception:
        # le ledger est déjà commité ; la réconciliation rattrapera
        logger.exception("Wallet pass background sync crashed", membership_id=str(membership_id), event=event)
        db.rollback()
    finally:
        db.close()


def reconcile_program_passes(
    db: Session,
    program: LoyaltyProgram,
    client: WalletPushClient,
    *,
    include_all: bool = False,
) -> dict:
    stats = {"processed": 0, "synced": 0, "failed": 0, "skipped": 0}

    if not has_walletpush_credentials(program):
        return stats

    q = (
        db.query(LoyaltyMembership.id)
        .filter(LoyaltyMembership.program_id == program.id)
        .filter(LoyaltyMembership.walletpush_serial.isnot(None))
    )
    if not include_all:
        q = q.filter(LoyaltyMembership.wallet_sync_pending.is_(True))
    membership_ids = [row[0] for row in q.all()]

    for membership_id in membership_ids:
        stats["processed"] += 1
        if sync_membership(db, membership_id, client):
            stats["synced"] += 1
        else:
            stats["failed"] += 1

    missing_serial = (
        db.query(LoyaltyMembership.id)
        .filter(LoyaltyMembership.program_id == program.id)
        .filter(LoyaltyMembership.walletpush_serial.is_(None))
        .count()
    )
    stats["skipped"] = missing_serial

    logger.info("Wallet pass reconciliation finished", program_id=str(program.id), **stats)
    return stats
