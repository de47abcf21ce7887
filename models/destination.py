from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from core.clock import utcnow
from models.base import Base, JSONType


class DestinationType(Base):
    """
    Upload target kind (SFTP, OneDrive, GoogleDrive).

    oauth_config (OAuth providers only):
        auth_url: Provider authorization endpoint
        token_url: Provider token endpoint
        required_scopes: Scopes requested during authorization
        extra_auth_params: Extra query parameters for the authorization URL
    """
    __tablename__ = "destination_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    requires_oauth = Column(Boolean, default=False, nullable=False)
    oauth_config = Column(JSONType, nullable=True)
    required_fields = Column(JSONType, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class Destination(Base):
    """
    Where a schedule's export is uploaded.

    ``credentials`` follows the layout of ``schemas.credentials.DestinationCredentials``:
    public config in clear text, sensitive fields only as encrypted blobs.
    Mutated through the OAuth lifecycle manager, which audits every change.
    """
    __tablename__ = "destinations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    destination_type_id = Column(Integer, ForeignKey("destination_types.id"), nullable=False)
    file_format = Column(String(10), nullable=False, default="csv")
    credentials = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    destination_type = relationship("DestinationType", lazy="joined", innerjoin=True)


class CredentialAudit(Base):
    """Redacted before/after snapshots of every credential mutation."""
    __tablename__ = "destination_credentials_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    destination_id = Column(Integer, ForeignKey("destinations.id"), nullable=False)
    action = Column(String(50), nullable=False)
    old_credentials = Column(JSONType, nullable=True)
    new_credentials = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_credential_audit_destination", "destination_id", "created_at"),
    )
