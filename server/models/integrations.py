import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    false,
    func,
)

from core.orm import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider_identifier", name="uq_integration_user_provider"
        ),
        Index("idx_integrations_provider_internal", "provider_identifier", "internal_id"),
        Index("idx_integrations_token_expiration", "token_expiration"),
    )

    id = Column(Text, primary_key=True, default=_new_id)
    user_id = Column(Text, nullable=False, index=True)
    provider_identifier = Column(Text, nullable=False)
    internal_id = Column(Text, nullable=False)
    type = Column(Text, nullable=False, server_default="social_media")
    name = Column(Text)
    picture = Column(Text)
    profile = Column(Text)
    # Fernet ciphertext, see auth.encryption
    token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_expiration = Column(DateTime(timezone=True))
    token_version = Column(Integer, nullable=False, server_default="1")
    refresh_needed = Column(Boolean, nullable=False, server_default=false())
    disabled = Column(Boolean, nullable=False, server_default=false())
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
