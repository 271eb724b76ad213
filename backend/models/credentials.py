from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.sql import func
from .database import Base

class OAuthCredential(Base):
    __tablename__ = "oauth_credentials"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String, unique=True, index=True, nullable=False)  # agency that owns the tokens
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)
    expires_in = Column(Integer, nullable=False)  # TTL in seconds from issued_at
    user_id = Column(String, nullable=True)
    location_id = Column(String, nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)  # reset on every token write
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
