from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from .database import Base

RUN_IN_PROGRESS = "in_progress"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"


class ProvisioningRun(Base):
    __tablename__ = "provisioning_runs"
    __table_args__ = (
        UniqueConstraint("company_id", "email", name="uq_provisioning_runs_company_email"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(String, index=True, nullable=False)
    email = Column(String, index=True, nullable=False)
    business_name = Column(String, nullable=True)
    status = Column(String, index=True, default=RUN_IN_PROGRESS)
    attempt = Column(Integer, nullable=False, default=1)  # bumped on every takeover of the claim
    location_id = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    folder_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
