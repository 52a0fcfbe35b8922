import uuid
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    TIMESTAMP,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from stamp_engine.db import Base


class LoyaltyMembership(Base):
    __tablename__ = "loyalty_memberships"

    __table_args__ = (
        UniqueConstraint("program_id", "user_wallet_pass_id", name="uq_loyalty_memberships_program_wallet_pass"),
        CheckConstraint("stamps_balance >= 0", name="ck_loyalty_memberships_balance_non_negative"),
        CheckConstraint("points_balance >= 0", name="ck_loyalty_memberships_points_non_negative"),
        Index("ix_loyalty_memberships_sync_pending", "program_id", postgresql_where=text("wallet_sync_pending")),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False)

    # pas de FK vers app_users : la clé durable est l'id du pass wallet
    user_wallet_pass_id = Column(String(100), nullable=False)

    stamps_balance = Column(Integer, nullable=False, default=0)
    points_balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_redeemed = Column(Integer, nullable=False, default=0)

    last_earned_at = Column(TIMESTAMP)

    status = Column(String(20), nullable=False, default="active")  # active / inactive

    walletpush_serial = Column(String(100))
    wallet_sync_pending = Column(Boolean, nullable=False, default=False)
    wallet_synced_at = Column(TIMESTAMP)

    joined_at = Column(TIMESTAMP, server_default=func.now())
    last_active_at = Column(TIMESTAMP, server_default=func.now())
