import uuid
from sqlalchemy import Column, ForeignKey, Index, Integer, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from stamp_engine.db import Base


class LoyaltyRedemption(Base):
    __tablename__ = "loyalty_redemptions"

    __table_args__ = (Index("ix_loyalty_redemptions_program_consumed_at", "program_id", "consumed_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    membership_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_memberships.id"), nullable=False)
    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False)
    business_id = Column(String(100), nullable=False)
    user_wallet_pass_id = Column(String(100), nullable=False)

    # copie du texte au moment de la consommation
    reward_description = Column(String(255), nullable=False)
    stamps_deducted = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default="consumed")
    consumed_at = Column(TIMESTAMP, nullable=False)
    display_expires_at = Column(TIMESTAMP, nullable=False)

    flagged_at = Column(TIMESTAMP)
    flagged_reason = Column(String(500))
    flagged_by = Column(String(100))
