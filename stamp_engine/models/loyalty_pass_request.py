import uuid
from sqlalchemy import Column, ForeignKey, Index, JSON, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from stamp_engine.db import Base


class LoyaltyPassRequest(Base):
    __tablename__ = "loyalty_pass_requests"

    __table_args__ = (Index("ix_loyalty_pass_requests_city_status", "city", "status"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    program_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_programs.id"), nullable=False)
    business_id = Column(String(100), nullable=False)
    city = Column(String(50), nullable=False)

    request_type = Column(String(20), nullable=False, default="new")  # new / edit

    # snapshot figé au moment de la soumission
    design_spec_json = Column(JSON, nullable=False)

    status = Column(String(20), nullable=False, default="submitted")
    # submitted | issued | rejected
    rejection_reason = Column(String(500))

    walletpush_template_id = Column(String(100))
    walletpush_api_key = Column(String(255))
    walletpush_pass_type_id = Column(String(255))

    reviewed_by_admin_id = Column(String(100))
    reviewed_at = Column(TIMESTAMP)

    created_at = Column(TIMESTAMP, server_default=func.now())
