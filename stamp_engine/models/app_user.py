import uuid
from sqlalchemy import Column, Date, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from stamp_engine.db import Base


class AppUser(Base):
    __tablename__ = "app_users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    wallet_pass_id = Column(String(100), nullable=False, unique=True)

    first_name = Column(String(100))
    last_name = Column(String(100))
    email = Column(String(255))
    date_of_birth = Column(Date)

    created_at = Column(TIMESTAMP, server_default=func.now())
