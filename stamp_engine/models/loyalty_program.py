import uuid
from sqlalchemy import CheckConstraint, Column, Index, Integer, String, TIMESTAMP, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from stamp_engine.db import Base


class LoyaltyProgram(Base):
    __tablename__ = "loyalty_programs"

    __table_args__ = (
        CheckConstraint("reward_threshold > 0", name="ck_loyalty_programs_reward_threshold_positive"),
        CheckConstraint(
            "max_earns_per_day >= 1 AND max_earns_per_day <= 10",
            name="ck_loyalty_programs_max_earns_per_day_range",
        ),
        CheckConstraint(
            "min_gap_minutes >= 0 AND min_gap_minutes <= 1440",
            name="ck_loyalty_programs_min_gap_minutes_range",
        ),
        Index("ix_loyalty_programs_city_status", "city", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # une seule carte par business, quel que soit le statut
    business_id = Column(String(100), nullable=False, unique=True)
    business_name = Column(String(200), nullable=False)
    city = Column(String(50), nullable=False)

    public_id = Column(String(20), nullable=False, unique=True)

    program_name = Column(String(200))
    type = Column(String(20), nullable=False, default="stamps")  # stamps / points
    reward_threshold = Column(Integer, nullable=False, default=10)
    reward_description = Column(String(255), nullable=False, default="")
    stamp_label = Column(String(50), nullable=False, default="Stamps")
    earn_mode = Column(String(20), nullable=False, default="per_visit")  # per_visit / per_transaction
    points_per_earn = Column(Integer, nullable=False, default=1)
    stamp_icon = Column(String(30), nullable=False, default="stamp")

    earn_instructions = Column(Text)
    redeem_instructions = Column(Text)
    terms_and_conditions = Column(Text)

    primary_color = Column(String(20))
    background_color = Column(String(20))
    logo_url = Column(String(500))
    logo_description = Column(String(500))
    strip_image_url = Column(String(500))
    strip_image_description = Column(String(500))

    timezone = Column(String(64), nullable=False, default="Europe/London")
    max_earns_per_day = Column(Integer, nullable=False, default=1)
    min_gap_minutes = Column(Integer, nullable=False, default=30)

    status = Column(String(20), nullable=False, default="draft")
    # draft | submitted | active | paused

    walletpush_template_id = Column(String(100))
    walletpush_api_key = Column(String(255))
    walletpush_pass_type_id = Column(String(255))

    counter_qr_token = Column(String(64), nullable=False)
    previous_counter_qr_token = Column(String(64))
    counter_qr_token_rotated_at = Column(TIMESTAMP)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
