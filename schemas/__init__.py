"""
Pydantic schemas for data validation and serialization.

Schemas:
    credentials: Typed destination credentials (public config vs. encrypted
        secrets), encrypted blobs and the short-lived decrypted view
    api: API endpoint request/response schemas

Usage:
    from schemas.credentials import DestinationCredentials, EncryptedBlob
    from schemas.api import HealthCheckResponse

Example:
    # Stored credentials never hold a plaintext secret
    stored = DestinationCredentials.from_plain(
        {"clientId": "abc", "clientSecret": "s3cr3t", "redirectUri": "https://app/cb"},
        cipher,
    )
    assert isinstance(stored.secrets.client_secret, EncryptedBlob)
"""

__all__ = [
    "EncryptedBlob",
    "DestinationCredentials",
    "DecryptedCredentials",
    "HealthCheckResponse",
    "ErrorResponse",
]
