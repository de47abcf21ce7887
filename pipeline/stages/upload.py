"""
Upload stage: obtain live credentials and hand the export to the destination client.

OAuth destinations get their credentials from the OAuth lifecycle manager
(refreshed ahead of expiry, decrypted for this call only). Other destinations
(SFTP) decrypt their stored secrets locally.

The client call runs under the upload retry policy. Authorization failures
are never retried: they surface as ``DestinationError`` with
``reauthorization_required`` set.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from core.exceptions import (
    ETLException,
    CryptoError,
    DestinationError,
    TokenError,
)
from core.retry import RetryPolicy
from credentials.cipher import CredentialCipher
from credentials.oauth_manager import OAuthManager
from models.destination import Destination
from pipeline.base import DestinationClient, FormattedOutput
from schemas.credentials import (
    SENSITIVE_FIELDS,
    DecryptedCredentials,
    DestinationCredentials,
)

logger = logging.getLogger(__name__)


class Uploader:
    """
    Attributes:
        clients: Destination client per destination type name
        retry_policy: Policy for the client call (transient provider errors only)
    """

    def __init__(
        self,
        oauth_manager: OAuthManager,
        cipher: CredentialCipher,
        clients: Mapping[str, DestinationClient],
        retry_policy: RetryPolicy
    ):
        self.oauth_manager = oauth_manager
        self.cipher = cipher
        self.clients = dict(clients)
        self.retry_policy = retry_policy

    async def _credentials_for(self, destination: Destination) -> DecryptedCredentials:
        context = {
            "destination_id": destination.id,
            "destination_type": destination.destination_type.name,
        }

        if destination.destination_type.requires_oauth:
            try:
                return await self.oauth_manager.get_decrypted_credentials(destination.id)
            except TokenError as e:
                raise DestinationError(
                    f"Reauthorization required: {e.message}",
                    context=context,
                    original_exception=e,
                    reauthorization_required=True
                )
            except ETLException as e:
                raise DestinationError(
                    f"Destination credentials unavailable: {e.message}",
                    context={**context, "error_code": e.code},
                    original_exception=e
                )

        stored = DestinationCredentials.from_storage(destination.credentials)
        try:
            plain = await self.cipher.decrypt_fields_async(stored.secrets_mapping(), SENSITIVE_FIELDS)
        except CryptoError as e:
            raise DestinationError(
                "Stored destination credentials cannot be decrypted",
                context=context,
                original_exception=e
            )
        return DecryptedCredentials.from_mapping(stored, plain)

    async def upload(self, output: FormattedOutput, destination: Destination) -> Dict[str, Any]:
        """
        Raises:
            DestinationError: Unknown destination type, authorization failure,
                permanent provider error or retries exhausted
        """
        type_name = destination.destination_type.name
        context = {"destination_id": destination.id, "destination_type": type_name}

        client = self.clients.get(type_name)
        if client is None:
            raise DestinationError(
                f"No client registered for destination type {type_name}", context=context
            )

        credentials = await self._credentials_for(destination)

        async def attempt():
            return await client.upload(output, type_name, credentials)

        try:
            result = await self.retry_policy.run(attempt, f"upload to {type_name}")
        except DestinationError:
            raise
        except ETLException as e:
            raise DestinationError(
                f"Upload to {type_name} failed: {e.message}",
                context={**context, "error_code": e.code},
                original_exception=e
            )
        except Exception as e:
            raise DestinationError(
                f"Upload to {type_name} failed: {e}",
                context=context,
                original_exception=e
            )

        logger.info(f"Uploaded {output.filename} ({output.size} bytes) to {type_name}")
        return result or {}
