import hashlib
import secrets
import string
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy.orm import Session

from stamp_engine.config import TOKEN_GRACE_WINDOW_MINUTES
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.services.time_utils import utcnow

_SHORT_CODE_ALPHABET = string.ascii_letters + string.digits


def _short_code(length: int) -> str:
    return "".join(secrets.choice(_SHORT_CODE_ALPHABET) for _ in range(length))


def generate_public_id() -> str:
    return _short_code(10)


def generate_counter_qr_token() -> str:
    return _short_code(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def is_token_valid(program: LoyaltyProgram, token: str, *, now: datetime | None = None) -> bool:
    """
    Token courant, ou token précédent tant que la fenêtre de grâce
    après rotation n'est pas écoulée.
    """
    if not token:
        return False

    if program.counter_qr_token and secrets.compare_digest(program.counter_qr_token, token):
        return True

    if program.previous_counter_qr_token and program.counter_qr_token_rotated_at:
        if secrets.compare_digest(program.previous_counter_qr_token, token):
            now = now or utcnow()
            grace_end = program.counter_qr_token_rotated_at + timedelta(minutes=TOKEN_GRACE_WINDOW_MINUTES)
            return now <= grace_end

    return False


def rotate_counter_token(db: Session, program: LoyaltyProgram, *, now: datetime | None = None) -> str:
    now = now or utcnow()

    program.previous_counter_qr_token = program.counter_qr_token
    program.counter_qr_token = generate_counter_qr_token()
    program.counter_qr_token_rotated_at = now

    db.commit()
    db.refresh(program)

    logger.info("Counter QR token rotated", program_id=str(program.id), business_id=program.business_id)
    return program.counter_qr_token
