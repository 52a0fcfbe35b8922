import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from stamp_engine.db import Base


class LoyaltyEarnEvent(Base):
    __tablename__ = "loyalty_earn_events"

    __table_args__ = (
        Index("ix_loyalty_earn_events_membership_valid_earned_at", "membership_id", "valid", "earned_at"),
        Index("ix_loyalty_earn_events_wallet_pass_earned_at", "user_wallet_pass_id", "earned_at"),
        Index("ix_loyalty_earn_events_ip_hash_earned_at", "ip_hash", "earned_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # NULL quand la tentative est rejetée avant toute adhésion
    membership_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_memberships.id"), nullable=True)
    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False)
    business_id = Column(String(100), nullable=False)
    user_wallet_pass_id = Column(String(100), nullable=False)

    earned_at = Column(TIMESTAMP, nullable=False)
    method = Column(String(20), nullable=False, default="counter_qr")

    amount = Column(Integer, nullable=False, default=0)
    token_hash = Column(String(64))
    ip_hash = Column(String(64))

    valid = Column(Boolean, nullable=False)
    reason_if_invalid = Column(String(50))
