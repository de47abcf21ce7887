"""
Typed destination credentials.

The ``credentials`` JSON column of a destination is split into a public part
(client id, redirect URI, folder paths, hosts) and a sensitive part whose
values can only be ``EncryptedBlob`` instances. Plaintext tokens exist only in
``DecryptedCredentials``, wrapped in ``SecretStr``, and are never persisted.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from models.base import CredentialStatus

SENSITIVE_FIELDS = ("accessToken", "refreshToken", "clientSecret")
REDACTED = "[REDACTED]"


class EncryptedBlob(BaseModel):
    """Output of one encryption call; every part is base64 and freshly random."""
    encrypted: str
    iv: str
    salt: str
    tag: str


class PublicCredentialConfig(BaseModel):
    """Non-sensitive destination settings, kept in clear text for queries."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    client_id: Optional[str] = Field(None, alias="clientId")
    redirect_uri: Optional[str] = Field(None, alias="redirectUri")

    def get(self, key: str, default: Any = None) -> Any:
        data = self.model_dump(by_alias=True)
        return data.get(key, default)


class SensitiveCredentials(BaseModel):
    """Sensitive fields; only ever encrypted."""
    model_config = ConfigDict(populate_by_name=True)

    access_token: Optional[EncryptedBlob] = Field(None, alias="accessToken")
    refresh_token: Optional[EncryptedBlob] = Field(None, alias="refreshToken")
    client_secret: Optional[EncryptedBlob] = Field(None, alias="clientSecret")


class DestinationCredentials(BaseModel):
    """Storage layout of ``Destination.credentials``."""
    model_config = ConfigDict(populate_by_name=True)

    config: PublicCredentialConfig = Field(default_factory=PublicCredentialConfig)
    secrets: SensitiveCredentials = Field(default_factory=SensitiveCredentials)
    token_expires_at: Optional[datetime] = Field(None, alias="tokenExpiresAt")
    status: CredentialStatus = CredentialStatus.UNAUTHORIZED

    @classmethod
    def from_storage(cls, raw: Optional[Dict[str, Any]]) -> "DestinationCredentials":
        return cls.model_validate(raw or {})

    @classmethod
    def from_plain(cls, plain: Dict[str, Any], cipher) -> "DestinationCredentials":
        """
        Build stored credentials from a flat user-supplied mapping
        (initial destination creation). Sensitive keys are encrypted,
        everything else becomes public config.
        """
        public = {k: v for k, v in plain.items() if k not in SENSITIVE_FIELDS}
        sensitive = cipher.encrypt_fields(
            {k: plain.get(k) for k in SENSITIVE_FIELDS}, SENSITIVE_FIELDS
        )
        return cls(
            config=PublicCredentialConfig.model_validate(public),
            secrets=SensitiveCredentials.model_validate(
                {k: v for k, v in sensitive.items() if v}
            ),
            status=CredentialStatus.UNAUTHORIZED,
        )

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def secrets_mapping(self) -> Dict[str, Any]:
        """Sensitive fields keyed by their stored names (blobs as dicts)."""
        return self.secrets.model_dump(mode="json", by_alias=True)

    def redacted(self) -> Dict[str, Any]:
        """Audit-safe snapshot: neither plaintext nor ciphertext of secrets."""
        data = self.to_storage()
        data["secrets"] = {
            name: (REDACTED if value else None)
            for name, value in data["secrets"].items()
        }
        return data

    @property
    def has_access_token(self) -> bool:
        return self.secrets.access_token is not None


class DecryptedCredentials(BaseModel):
    """Short-lived plaintext view handed to a destination client."""

    config: PublicCredentialConfig
    access_token: Optional[SecretStr] = None
    refresh_token: Optional[SecretStr] = None
    client_secret: Optional[SecretStr] = None
    token_expires_at: Optional[datetime] = None
    status: CredentialStatus = CredentialStatus.UNAUTHORIZED

    @classmethod
    def from_mapping(
        cls, stored: DestinationCredentials, plain_secrets: Dict[str, Any]
    ) -> "DecryptedCredentials":
        def secret(name: str) -> Optional[SecretStr]:
            value = plain_secrets.get(name)
            return SecretStr(str(value)) if value else None

        return cls(
            config=stored.config,
            access_token=secret("accessToken"),
            refresh_token=secret("refreshToken"),
            client_secret=secret("clientSecret"),
            token_expires_at=stored.token_expires_at,
            status=stored.status,
        )
