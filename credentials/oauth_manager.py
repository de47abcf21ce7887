"""
OAuth lifecycle manager: authorize, exchange, refresh, revoke.

This is the single interface the upload stage uses to get live credentials
for a destination. Credential state per destination:

    UNAUTHORIZED → AUTHORIZING → AUTHORIZED ⇄ (refreshing) → REVOKED

Every mutation of a credential is persisted together with a redacted audit
row in one transaction. Decrypted tokens are returned only from
``get_decrypted_credentials`` and are never written back or logged.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utcnow, ensure_utc
from core.config import settings
from core.error_logger import ErrorLogger
from core.exceptions import (
    ETLException,
    ConfigError,
    CryptoError,
    StateError,
    TokenError,
    ProviderError,
)
from core.retry import RetryPolicy, linear_backoff, is_transient
from credentials.cipher import CredentialCipher, get_cipher
from credentials.store import CredentialStore
from models.base import CredentialStatus
from models.destination import Destination
from schemas.credentials import (
    SENSITIVE_FIELDS,
    DestinationCredentials,
    DecryptedCredentials,
)

logger = logging.getLogger(__name__)

REQUIRED_OAUTH_FIELDS = ("clientId", "clientSecret", "redirectUri")
DEFAULT_EXPIRES_IN = 3600


class OAuthManager:
    """
    OAuth credential lifecycle for destinations.

    Attributes:
        state_ttl: Lifetime of an issued OAuth state (default: 10 minutes)
        refresh_threshold: Refresh-ahead window before expiry (default: 5 minutes)
        timeout: Token endpoint request timeout in seconds (default: 5.0)
        retry_policy: Policy applied to every token endpoint call
    """

    def __init__(
        self,
        db_session: AsyncSession,
        cipher: Optional[CredentialCipher] = None,
        retry_policy: Optional[RetryPolicy] = None,
        error_logger: Optional[ErrorLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        state_ttl: Optional[timedelta] = None,
        refresh_threshold: Optional[timedelta] = None,
        timeout: Optional[float] = None
    ):
        self.store = CredentialStore(db_session)
        self.cipher = cipher or get_cipher()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.OAUTH_MAX_RETRY_ATTEMPTS,
            backoff=linear_backoff(settings.OAUTH_RETRY_BASE_DELAY),
            retryable=is_transient,
        )
        self.error_logger = error_logger or ErrorLogger()
        self.state_ttl = state_ttl or timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS)
        self.refresh_threshold = refresh_threshold or timedelta(
            seconds=settings.TOKEN_REFRESH_THRESHOLD_SECONDS
        )
        self.timeout = timeout if timeout is not None else settings.OAUTH_HTTP_TIMEOUT
        self._transport = transport

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def validate_oauth_config(
        self, destination: Destination, credentials: DestinationCredentials
    ) -> Dict[str, Any]:
        """
        Check that a destination can take part in an OAuth flow.

        Returns:
            The destination type's oauth_config

        Raises:
            ConfigError: Missing client fields, endpoints or scopes
        """
        destination_type = destination.destination_type
        context = {
            "destination_id": destination.id,
            "provider": destination_type.name,
        }

        if not destination_type.requires_oauth:
            raise ConfigError(
                f"Destination type {destination_type.name} does not use OAuth",
                context=context
            )

        present = {
            "clientId": credentials.config.client_id,
            "clientSecret": credentials.secrets.client_secret,
            "redirectUri": credentials.config.redirect_uri,
        }
        missing_fields = [name for name in REQUIRED_OAUTH_FIELDS if not present[name]]
        if missing_fields:
            raise ConfigError(
                "Missing required OAuth fields",
                context={**context, "missing_fields": missing_fields}
            )

        oauth_config = destination_type.oauth_config or {}
        if not oauth_config.get("required_scopes"):
            raise ConfigError(
                "Missing required OAuth scopes configuration", context=context
            )

        missing_endpoints = [
            key for key in ("auth_url", "token_url") if not oauth_config.get(key)
        ]
        if missing_endpoints:
            raise ConfigError(
                "Missing OAuth provider endpoints",
                context={**context, "missing_fields": missing_endpoints}
            )

        return oauth_config

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def get_authorization_url(self, user_id: int, destination_id: int) -> str:
        """
        Issue a single-use state and build the provider authorization URL.
        """
        context = {"user_id": user_id, "destination_id": destination_id}

        try:
            destination = await self.store.get_destination(destination_id)
            if destination.user_id != user_id:
                raise ConfigError("Destination not found", context=context)

            credentials = DestinationCredentials.from_storage(destination.credentials)
            oauth_config = self.validate_oauth_config(destination, credentials)
            provider = destination.destination_type.name

            state = secrets.token_hex(32)
            self.store.create_state(
                state=state,
                user_id=user_id,
                destination_id=destination_id,
                provider=provider,
                expires_at=utcnow() + self.state_ttl,
            )

            # A working credential keeps serving runs until the new grant lands
            if credentials.status in (CredentialStatus.UNAUTHORIZED, CredentialStatus.REVOKED):
                updated = credentials.model_copy(deep=True)
                updated.status = CredentialStatus.AUTHORIZING
                self.store.save_credentials(
                    destination, updated, credentials, "authorization_started"
                )

            await self.store.commit()

            params = {
                "client_id": credentials.config.client_id,
                "response_type": "code",
                "redirect_uri": credentials.config.redirect_uri,
                "scope": " ".join(oauth_config["required_scopes"]),
                "state": state,
                "access_type": "offline",
                "prompt": "consent",
                **(oauth_config.get("extra_auth_params") or {}),
            }

            logger.info(f"Issued authorization URL for destination {destination_id} ({provider})")
            return f"{oauth_config['auth_url']}?{urlencode(params)}"

        except ETLException as e:
            await self.store.rollback()
            await self.error_logger.log_error(e, context)
            raise

    async def handle_callback(self, code: str, state: str) -> Dict[str, Any]:
        """
        Verify and consume the state, exchange the code, persist encrypted tokens.

        The state is consumed before the exchange, so a failed callback
        cannot be replayed; the user restarts the authorization instead.
        """
        context: Dict[str, Any] = {}

        try:
            if not state:
                raise StateError("Missing state parameter")
            if not code:
                raise StateError("Missing authorization code")

            state_row = await self.store.consume_state(state, utcnow())
            await self.store.commit()

            if state_row is None:
                raise StateError("Invalid or expired state parameter")

            destination_id = state_row.destination_id
            context.update({
                "destination_id": destination_id,
                "user_id": state_row.user_id,
                "provider": state_row.provider,
            })

            destination = await self.store.get_destination(destination_id)
            if destination.user_id != state_row.user_id:
                raise StateError("State does not belong to the destination owner", context=dict(context))

            credentials = DestinationCredentials.from_storage(destination.credentials)
            oauth_config = self.validate_oauth_config(destination, credentials)

            tokens = await self._request_tokens(
                oauth_config["token_url"],
                {
                    "client_id": credentials.config.client_id,
                    "client_secret": await self.cipher.decrypt_async(credentials.secrets.client_secret),
                    "code": code,
                    "redirect_uri": credentials.config.redirect_uri,
                    "grant_type": "authorization_code",
                },
                provider=state_row.provider,
                grant="authorization code exchange",
            )

            destination = await self.store.get_destination(destination_id, for_update=True)
            current = DestinationCredentials.from_storage(destination.credentials)

            updated = current.model_copy(deep=True)
            await self._apply_tokens(updated, tokens)
            self.store.save_credentials(destination, updated, current, "authorize")
            await self.store.commit()

            logger.info(f"Destination {destination_id} authorized with {state_row.provider}")
            return {
                "success": True,
                "destination_id": destination_id,
                "expires_in": self._expires_in(tokens),
            }

        except ETLException as e:
            await self.store.rollback()
            await self.error_logger.log_error(e, context)
            raise

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_tokens(
        self, destination_id: int, only_if_expiring: bool = False
    ) -> DestinationCredentials:
        """
        Exchange the stored refresh token for a new access token.

        The destination row is locked for the whole refresh so a concurrent
        run never reads a half-updated token pair. With ``only_if_expiring``
        the refresh is skipped when another run refreshed while we waited.

        Raises:
            TokenError: No refresh token stored, or the provider rejected it
            ProviderError: Provider unreachable after all retry attempts
        """
        context = {"destination_id": destination_id}

        try:
            destination = await self.store.get_destination(destination_id, for_update=True)
            current = DestinationCredentials.from_storage(destination.credentials)

            if current.secrets.refresh_token is None:
                raise TokenError(
                    "No refresh token available; reauthorization required",
                    context=dict(context)
                )

            if only_if_expiring and not self._needs_refresh(current):
                # Refreshed by a concurrent run while we waited for the lock
                await self.store.commit()
                return current

            oauth_config = self.validate_oauth_config(destination, current)
            provider = destination.destination_type.name
            context["provider"] = provider

            tokens = await self._request_tokens(
                oauth_config["token_url"],
                {
                    "client_id": current.config.client_id,
                    "client_secret": await self.cipher.decrypt_async(current.secrets.client_secret),
                    "refresh_token": await self.cipher.decrypt_async(current.secrets.refresh_token),
                    "grant_type": "refresh_token",
                },
                provider=provider,
                grant="token refresh",
            )

            updated = current.model_copy(deep=True)
            await self._apply_tokens(updated, tokens)
            self.store.save_credentials(destination, updated, current, "refresh")
            await self.store.commit()

            logger.info(f"Refreshed {provider} token for destination {destination_id}")
            return updated

        except ETLException as e:
            await self.store.rollback()
            await self.error_logger.log_error(e, context)
            raise

    async def check_and_refresh_tokens(self, destination_id: int) -> DestinationCredentials:
        """
        Return the stored credentials, refreshing first when the access token
        expires within the refresh threshold.

        Raises:
            TokenError: Credential revoked or never authorized
        """
        destination = await self.store.get_destination(destination_id)
        credentials = DestinationCredentials.from_storage(destination.credentials)

        if credentials.status != CredentialStatus.AUTHORIZED or not credentials.has_access_token:
            raise TokenError(
                "Destination is not authorized; reauthorization required",
                context={
                    "destination_id": destination_id,
                    "credential_status": credentials.status.value,
                }
            )

        if self._needs_refresh(credentials):
            logger.info(f"Access token for destination {destination_id} expires soon, refreshing")
            return await self.refresh_tokens(destination_id, only_if_expiring=True)

        return credentials

    async def get_decrypted_credentials(self, destination_id: int) -> DecryptedCredentials:
        """Refresh if needed, then decrypt the sensitive fields for momentary use."""
        credentials = await self.check_and_refresh_tokens(destination_id)

        try:
            plain = await self.cipher.decrypt_fields_async(credentials.secrets_mapping(), SENSITIVE_FIELDS)
        except CryptoError as e:
            await self.error_logger.log_error(e, {"destination_id": destination_id})
            raise

        return DecryptedCredentials.from_mapping(credentials, plain)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke_tokens(self, destination_id: int) -> Dict[str, Any]:
        """Clear stored tokens; later uploads fail fast until reauthorized."""
        context = {"destination_id": destination_id}

        try:
            destination = await self.store.get_destination(destination_id, for_update=True)
            current = DestinationCredentials.from_storage(destination.credentials)

            updated = current.model_copy(deep=True)
            updated.secrets.access_token = None
            updated.secrets.refresh_token = None
            updated.token_expires_at = None
            updated.status = CredentialStatus.REVOKED

            self.store.save_credentials(destination, updated, current, "revoke")
            await self.store.commit()

            logger.info(f"Revoked tokens for destination {destination_id}")
            return {"success": True, "destination_id": destination_id}

        except ETLException as e:
            await self.store.rollback()
            await self.error_logger.log_error(e, context)
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _needs_refresh(self, credentials: DestinationCredentials) -> bool:
        expires_at = ensure_utc(credentials.token_expires_at)
        if expires_at is None:
            return False
        return expires_at - utcnow() < self.refresh_threshold

    @staticmethod
    def _expires_in(tokens: Dict[str, Any]) -> int:
        try:
            return int(tokens.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            return DEFAULT_EXPIRES_IN

    async def _apply_tokens(self, credentials: DestinationCredentials, tokens: Dict[str, Any]) -> None:
        """Encrypt a token response into ``credentials`` (in place)."""
        credentials.secrets.access_token = await self.cipher.encrypt_async(tokens["access_token"])
        # Providers that do not rotate refresh tokens omit them
        if tokens.get("refresh_token"):
            credentials.secrets.refresh_token = await self.cipher.encrypt_async(tokens["refresh_token"])
        credentials.token_expires_at = utcnow() + timedelta(seconds=self._expires_in(tokens))
        credentials.status = CredentialStatus.AUTHORIZED

    async def _request_tokens(
        self,
        token_url: str,
        params: Dict[str, str],
        provider: str,
        grant: str
    ) -> Dict[str, Any]:
        """
        POST to the provider token endpoint under the retry policy.

        400/401 are permanent (TokenError), 429/5xx and transport failures are
        transient (ProviderError, retried), other 4xx are permanent ProviderErrors.
        """
        context = {"provider": provider, "grant": grant}

        async def attempt() -> Dict[str, Any]:
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    response = await client.post(
                        token_url,
                        data=params,
                        headers={"Accept": "application/json"},
                    )
            except httpx.TimeoutException as e:
                raise ProviderError(
                    "Token endpoint timed out", context=dict(context), original_exception=e
                )
            except httpx.TransportError as e:
                raise ProviderError(
                    "No response from provider", context=dict(context), original_exception=e
                )

            status = response.status_code
            if status in (400, 401):
                raise TokenError(
                    f"Provider rejected {grant}; reauthorization required",
                    context={**context, "status_code": status}
                )
            if status == 429 or status >= 500:
                raise ProviderError(
                    f"{grant} failed", context=dict(context), status_code=status
                )
            if status >= 400:
                raise ProviderError(
                    f"{grant} failed", context=dict(context), status_code=status, retryable=False
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise ProviderError(
                    "Provider returned an invalid token response",
                    context=dict(context), original_exception=e, retryable=False
                )

            if not isinstance(payload, dict) or not payload.get("access_token"):
                raise ProviderError(
                    "Provider response did not include an access token",
                    context=dict(context), retryable=False
                )
            return payload

        return await self.retry_policy.run(attempt, f"{grant} ({provider})")
