from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stamp_engine.errors import (
    LoyaltyValidationError,
    NotFoundError,
    StateConflictError,
    TenantScopeError,
)
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_pass_request import LoyaltyPassRequest
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services.notification_service import send_slack_notification
from stamp_engine.services.presence_token_service import generate_counter_qr_token, generate_public_id
from stamp_engine.services.time_utils import utcnow


PROGRAM_TYPES = {"stamps", "points"}
EARN_MODES = {"per_visit", "per_transaction"}

# Champs sans impact sur le template du pass wallet
SELF_SERVICE_FIELDS = {
    "program_name",
    "earn_instructions",
    "redeem_instructions",
    "terms_and_conditions",
    "max_earns_per_day",
    "min_gap_minutes",
}

# Champs figés dans le template WalletPush : édition via demande admin
TEMPLATE_FIELDS = {
    "type",
    "reward_threshold",
    "reward_description",
    "stamp_label",
    "earn_mode",
    "points_per_earn",
    "stamp_icon",
    "primary_color",
    "background_color",
    "logo_url",
    "logo_description",
    "strip_image_url",
    "strip_image_description",
    "timezone",
}

DRAFT_EDITABLE_FIELDS = SELF_SERVICE_FIELDS | TEMPLATE_FIELDS

DESIGN_SPEC_FIELDS = [
    "program_name",
    "type",
    "reward_threshold",
    "reward_description",
    "stamp_label",
    "earn_mode",
    "points_per_earn",
    "stamp_icon",
    "earn_instructions",
    "redeem_instructions",
    "primary_color",
    "background_color",
    "logo_url",
    "logo_description",
    "strip_image_url",
    "strip_image_description",
    "terms_and_conditions",
    "timezone",
    "max_earns_per_day",
    "min_gap_minutes",
]

DRAFT_DEFAULTS = {
    "type": "stamps",
    "reward_threshold": 10,
    "reward_description": "",
    "stamp_label": "Stamps",
    "earn_mode": "per_visit",
    "points_per_earn": 1,
    "stamp_icon": "stamp",
    "primary_color": "#00d083",
    "background_color": "#0b0f14",
    "timezone": "Europe/London",
    "max_earns_per_day": 1,
    "min_gap_minutes": 30,
}

WALLETPUSH_CREDENTIAL_FIELDS = (
    "walletpush_template_id",
    "walletpush_api_key",
    "walletpush_pass_type_id",
)

NOT_NULL_FIELDS = {
    "type",
    "reward_threshold",
    "reward_description",
    "stamp_label",
    "earn_mode",
    "points_per_earn",
    "stamp_icon",
    "timezone",
    "max_earns_per_day",
    "min_gap_minutes",
}


# ============================================================
# VALIDATION
# ============================================================

def _require_int(fields: dict, key: str, *, min_value: int, max_value: int | None = None):
    value = fields[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise LoyaltyValidationError(f"{key} must be an integer", field=key)
    if value < min_value or (max_value is not None and value > max_value):
        bounds = f"between {min_value} and {max_value}" if max_value is not None else f">= {min_value}"
        raise LoyaltyValidationError(f"{key} must be {bounds}", field=key, value=value)


def validate_program_fields(fields: dict) -> None:
    """
    Contrôle des valeurs avant écriture. Hors bornes = erreur,
    jamais de clamp silencieux.
    """
    for key in NOT_NULL_FIELDS:
        if key in fields and fields[key] is None:
            raise LoyaltyValidationError(f"{key} cannot be null", field=key)

    if "max_earns_per_day" in fields:
        _require_int(fields, "max_earns_per_day", min_value=1, max_value=10)
    if "min_gap_minutes" in fields:
        _require_int(fields, "min_gap_minutes", min_value=0, max_value=1440)
    if "reward_threshold" in fields:
        _require_int(fields, "reward_threshold", min_value=1)
    if "points_per_earn" in fields:
        _require_int(fields, "points_per_earn", min_value=1)

    if "type" in fields and fields["type"] not in PROGRAM_TYPES:
        raise LoyaltyValidationError("type must be 'stamps' or 'points'", field="type")
    if "earn_mode" in fields and fields["earn_mode"] not in EARN_MODES:
        raise LoyaltyValidationError("earn_mode must be 'per_visit' or 'per_transaction'", field="earn_mode")

    if "timezone" in fields:
        try:
            ZoneInfo(fields["timezone"])
        except (ZoneInfoNotFoundError, ValueError):
            raise LoyaltyValidationError("Unknown timezone", field="timezone", value=fields["timezone"])


def _reject_unknown_fields(fields: dict, allowed: set, *, context: str) -> None:
    disallowed = sorted(k for k in fields if k not in allowed)
    if disallowed:
        raise LoyaltyValidationError(
            f"These fields cannot be changed {context}: {', '.join(disallowed)}",
            fields=disallowed,
        )


def _apply_fields(program: LoyaltyProgram, fields: dict) -> None:
    for k, v in fields.items():
        setattr(program, k, v)
    if program.type == "stamps":
        program.points_per_earn = 1


# ============================================================
# LOOKUPS
# ============================================================

def get_program_for_business(db: Session, business_id: str, *, city: str | None = None) -> LoyaltyProgram:
    q = db.query(LoyaltyProgram).filter(LoyaltyProgram.business_id == business_id)
    if city:
        q = q.filter(LoyaltyProgram.city == city)
    program = q.first()
    if not program:
        raise NotFoundError("No loyalty program found. Create one first.")
    return program


def get_program_by_public_id(db: Session, public_id: str, *, city: str | None = None) -> LoyaltyProgram:
    q = db.query(LoyaltyProgram).filter(LoyaltyProgram.public_id == public_id)
    if city:
        q = q.filter(LoyaltyProgram.city == city)
    program = q.first()
    if not program:
        raise NotFoundError("Program not found")
    return program


def get_program_in_scope(db: Session, program_id, *, city: str) -> LoyaltyProgram:
    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == program_id).first()
    if not program:
        raise NotFoundError("Program not found")
    if program.city != city:
        raise TenantScopeError("Program belongs to another city")
    return program


def _get_request_in_scope(db: Session, request_id, *, city: str) -> LoyaltyPassRequest:
    req = db.query(LoyaltyPassRequest).filter(LoyaltyPassRequest.id == request_id).first()
    if not req:
        raise NotFoundError("Request not found")
    if req.city != city:
        raise TenantScopeError("Request belongs to another city")
    return req


# ============================================================
# DRAFT
# ============================================================

def create_draft(
    db: Session,
    *,
    business_id: str,
    business_name: str,
    city: str,
    fields: dict | None = None,
) -> LoyaltyProgram:
    fields = {k: v for k, v in (fields or {}).items() if v is not None}
    _reject_unknown_fields(fields, DRAFT_EDITABLE_FIELDS, context="on a new program")
    validate_program_fields(fields)

    values = {**DRAFT_DEFAULTS, **fields}
    if not values.get("program_name"):
        values["program_name"] = f"{business_name} Rewards"

    program = LoyaltyProgram(
        business_id=business_id,
        business_name=business_name,
        city=city,
        public_id=generate_public_id(),
        counter_qr_token=generate_counter_qr_token(),
        status="draft",
    )
    _apply_fields(program, values)

    db.add(program)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(LoyaltyProgram).filter(LoyaltyProgram.business_id == business_id).first()
        if existing is None:
            raise
        raise StateConflictError(
            "A loyalty program already exists for this business",
            current_status=existing.status,
            programId=str(existing.id),
        )

    db.refresh(program)
    logger.info("Loyalty program draft created", program_id=str(program.id), business_id=business_id, city=city)
    return program


def update_draft_fields(db: Session, program: LoyaltyProgram, fields: dict) -> LoyaltyProgram:
    if program.status != "draft":
        raise StateConflictError(
            f"Program is already {program.status}; use the self-service update or an edit request",
            current_status=program.status,
        )

    _reject_unknown_fields(fields, DRAFT_EDITABLE_FIELDS, context="on a draft")
    validate_program_fields(fields)
    _apply_fields(program, fields)

    db.commit()
    db.refresh(program)
    return program


def update_self_service_fields(db: Session, program: LoyaltyProgram, fields: dict) -> LoyaltyProgram:
    if program.status not in {"active", "paused"}:
        raise StateConflictError(
            "Self-service changes are only available once the program is live",
            current_status=program.status,
        )

    _reject_unknown_fields(fields, SELF_SERVICE_FIELDS, context="without an edit request")
    validate_program_fields(fields)
    if "program_name" in fields and not (fields["program_name"] or "").strip():
        raise LoyaltyValidationError("program_name cannot be empty", field="program_name")

    for k, v in fields.items():
        setattr(program, k, v)

    db.commit()
    db.refresh(program)
    logger.info(
        "Loyalty program self-service update",
        program_id=str(program.id),
        fields=sorted(fields),
    )
    return program


# ============================================================
# SUBMIT / EDIT REQUEST
# ============================================================

def build_design_spec(program: LoyaltyProgram) -> dict:
    spec = {k: getattr(program, k) for k in DESIGN_SPEC_FIELDS}
    spec["program_name"] = program.program_name or f"{program.business_name} Rewards"
    spec["stamp_label"] = program.stamp_label or "Stamps"
    spec["business_name"] = program.business_name
    spec["business_city"] = program.city
    return spec


def submit_for_provisioning(db: Session, *, business_id: str, city: str | None = None) -> LoyaltyPassRequest:
    program = get_program_for_business(db, business_id, city=city)

    if program.status != "draft":
        raise StateConflictError(f"Program is already {program.status}", current_status=program.status)

    if not program.reward_threshold or not (program.reward_description or "").strip():
        raise LoyaltyValidationError("Reward threshold and description are required")

    design_spec = build_design_spec(program)

    result = db.execute(
        update(LoyaltyProgram)
        .where(LoyaltyProgram.id == program.id, LoyaltyProgram.status == "draft")
        .values(status="submitted", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(program)
        raise StateConflictError(f"Program is already {program.status}", current_status=program.status)

    req = LoyaltyPassRequest(
        program_id=program.id,
        business_id=program.business_id,
        city=program.city,
        request_type="new",
        design_spec_json=design_spec,
        status="submitted",
    )
    db.add(req)
    db.commit()
    db.refresh(req)
    db.refresh(program)

    logger.info("Loyalty program submitted", program_id=str(program.id), request_id=str(req.id))

    send_slack_notification(
        subject="New Loyalty Card Request",
        message=(
            f"{program.business_name} submitted a loyalty card for provisioning. "
            f'Reward: "{program.reward_description}" ({program.reward_threshold} {program.stamp_label}).'
        ),
        city=program.city,
        business_name=program.business_name,
    )
    return req


def submit_edit_request(
    db: Session,
    *,
    business_id: str,
    changes: dict,
    change_description: str | None = None,
    city: str | None = None,
) -> LoyaltyPassRequest:
    program = get_program_for_business(db, business_id, city=city)

    if program.status not in {"active", "paused"}:
        raise StateConflictError("No active/paused program found", current_status=program.status)

    if not changes:
        raise LoyaltyValidationError("No changes specified")

    _reject_unknown_fields(changes, DRAFT_EDITABLE_FIELDS, context="through an edit request")
    validate_program_fields(changes)

    pending = (
        db.query(LoyaltyPassRequest.id)
        .filter(LoyaltyPassRequest.business_id == business_id)
        .filter(LoyaltyPassRequest.request_type == "edit")
        .filter(LoyaltyPassRequest.status == "submitted")
        .first()
    )
    if pending:
        raise StateConflictError(
            "You already have a pending edit request. Please wait for it to be reviewed.",
            current_status="submitted",
            requestId=str(pending.id),
        )

    proposed = {**build_design_spec(program), **changes}
    proposed["_change_description"] = change_description or "Edit request"
    proposed["_changed_fields"] = sorted(changes)

    req = LoyaltyPassRequest(
        program_id=program.id,
        business_id=program.business_id,
        city=program.city,
        request_type="edit",
        design_spec_json=proposed,
        status="submitted",
    )
    db.add(req)
    db.commit()
    db.refresh(req)

    logger.info("Loyalty edit request submitted", program_id=str(program.id), request_id=str(req.id))

    note = f' Note: "{change_description}"' if change_description else ""
    send_slack_notification(
        subject="Loyalty Card Edit Request",
        message=(
            f"{program.business_name} requested changes to their loyalty card. "
            f"Fields: {', '.join(sorted(changes))}.{note}"
        ),
        city=program.city,
        business_name=program.business_name,
    )
    return req


# ============================================================
# ADMIN : ACTIVATE / REJECT / PAUSE
# ============================================================

def list_pending_requests(db: Session, *, city: str, now: datetime | None = None) -> list[dict]:
    now = now or utcnow()
    items = (
        db.query(LoyaltyPassRequest)
        .filter(LoyaltyPassRequest.city == city)
        .filter(LoyaltyPassRequest.status == "submitted")
        .order_by(LoyaltyPassRequest.created_at.asc())
        .all()
    )
    # pas d'expiration automatique : l'âge rend visibles les demandes en souffrance
    return [
        {
            "request": req,
            "ageHours": round((now - req.created_at).total_seconds() / 3600, 1) if req.created_at else None,
        }
        for req in items
    ]


def _validate_credentials(credentials: dict) -> dict:
    creds = {k: (credentials.get(k) or "").strip() for k in WALLETPUSH_CREDENTIAL_FIELDS}
    missing = [k for k, v in creds.items() if not v]
    if missing:
        raise LoyaltyValidationError("All three WalletPush credentials are required", fields=missing)
    return creds


def activate_request(
    db: Session,
    *,
    request_id,
    credentials: dict,
    admin_id: str,
    admin_city: str,
    now: datetime | None = None,
) -> LoyaltyProgram:
    now = now or utcnow()
    req = _get_request_in_scope(db, request_id, city=admin_city)

    if req.status != "submitted":
        raise StateConflictError(f"Request is already {req.status}", current_status=req.status)

    creds = _validate_credentials(credentials)
    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == req.program_id).one()

    if req.request_type == "edit":
        if program.status not in {"active", "paused"}:
            raise StateConflictError("Program is not live", current_status=program.status)
        changed = req.design_spec_json.get("_changed_fields") or []
        template_changes = {k: req.design_spec_json[k] for k in changed if k in DRAFT_EDITABLE_FIELDS}
        validate_program_fields(template_changes)
        _apply_fields(program, template_changes)
        if "type" in template_changes:
            # un seul solde : les adhésions existantes suivent stamps_balance
            db.execute(
                update(LoyaltyMembership)
                .where(
                    LoyaltyMembership.program_id == program.id,
                    LoyaltyMembership.points_balance != LoyaltyMembership.stamps_balance,
                )
                .values(points_balance=LoyaltyMembership.stamps_balance)
                .execution_options(synchronize_session=False)
            )
        for k, v in creds.items():
            setattr(program, k, v)
        db.flush()
    else:
        if program.status != "submitted":
            raise StateConflictError(f"Program is {program.status}, expected submitted", current_status=program.status)
        if not program.reward_threshold or program.reward_threshold <= 0:
            raise LoyaltyValidationError("reward_threshold must be > 0 before activation")

        result = db.execute(
            update(LoyaltyProgram)
            .where(LoyaltyProgram.id == program.id, LoyaltyProgram.status == "submitted")
            .values(status="active", updated_at=now, **creds)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(program)
            raise StateConflictError(f"Program is {program.status}, expected submitted", current_status=program.status)

    result = db.execute(
        update(LoyaltyPassRequest)
        .where(LoyaltyPassRequest.id == req.id, LoyaltyPassRequest.status == "submitted")
        .values(status="issued", reviewed_by_admin_id=admin_id, reviewed_at=now, **creds)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(req)
        raise StateConflictError(f"Request is already {req.status}", current_status=req.status)

    db.commit()
    db.refresh(program)
    db.refresh(req)

    logger.info(
        "Loyalty request activated",
        request_id=str(req.id),
        request_type=req.request_type,
        program_id=str(program.id),
        admin_id=admin_id,
    )

    send_slack_notification(
        subject="Loyalty Card Live" if req.request_type == "new" else "Loyalty Card Updated",
        message=f"{program.business_name}'s loyalty card is {program.status}.",
        city=program.city,
        business_name=program.business_name,
    )
    return program


def reject_request(
    db: Session,
    *,
    request_id,
    reason: str,
    admin_id: str,
    admin_city: str,
    now: datetime | None = None,
) -> LoyaltyPassRequest:
    now = now or utcnow()
    req = _get_request_in_scope(db, request_id, city=admin_city)

    if not (reason or "").strip():
        raise LoyaltyValidationError("A rejection reason is required")
    if req.status != "submitted":
        raise StateConflictError(f"Request is already {req.status}", current_status=req.status)

    result = db.execute(
        update(LoyaltyPassRequest)
        .where(LoyaltyPassRequest.id == req.id, LoyaltyPassRequest.status == "submitted")
        .values(status="rejected", rejection_reason=reason.strip(), reviewed_by_admin_id=admin_id, reviewed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(req)
        raise StateConflictError(f"Request is already {req.status}", current_status=req.status)

    if req.request_type == "new":
        # retour en brouillon pour correction puis nouvelle soumission
        db.execute(
            update(LoyaltyProgram)
            .where(LoyaltyProgram.id == req.program_id, LoyaltyProgram.status == "submitted")
            .values(status="draft", updated_at=now)
            .execution_options(synchronize_session=False)
        )

    db.commit()
    db.refresh(req)

    logger.info("Loyalty request rejected", request_id=str(req.id), admin_id=admin_id)

    program = db.query(LoyaltyProgram).filter(LoyaltyProgram.id == req.program_id).one()
    send_slack_notification(
        subject="Loyalty Card Request Rejected",
        message=f"Reason: {req.rejection_reason}",
        city=program.city,
        business_name=program.business_name,
    )
    return req


_STATUS_TRANSITIONS = {
    "paused": "active",
    "active": "paused",
}


def set_program_status(db: Session, program: LoyaltyProgram, status: str) -> LoyaltyProgram:
    if status not in _STATUS_TRANSITIONS:
        raise LoyaltyValidationError("status must be 'active' or 'paused'", field="status")

    expected_from = _STATUS_TRANSITIONS[status]
    result = db.execute(
        update(LoyaltyProgram)
        .where(LoyaltyProgram.id == program.id, LoyaltyProgram.status == expected_from)
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(program)
        raise StateConflictError(
            f"Cannot move program from {program.status} to {status}",
            current_status=program.status,
        )

    db.commit()
    db.refresh(program)
    logger.info("Loyalty program status changed", program_id=str(program.id), status=status)
    return program
