"""
Integration tests for the OAuth credential lifecycle
(authorize → callback → refresh → revoke) against a scripted provider
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from core.clock import utcnow, ensure_utc
from core.exceptions import ConfigError, ProviderError, StateError, TokenError
from credentials.oauth_manager import OAuthManager
from models import CredentialAudit, CredentialStatus, Destination, OAuthState
from schemas.credentials import DestinationCredentials


@pytest.fixture
def manager(db_session, cipher, retry_policy, provider):
    return OAuthManager(
        db_session, cipher=cipher, retry_policy=retry_policy, transport=provider.transport
    )


async def stored_credentials(db_session, destination_id) -> DestinationCredentials:
    destination = await db_session.get(Destination, destination_id, populate_existing=True)
    return DestinationCredentials.from_storage(destination.credentials)


async def audit_actions(db_session, destination_id):
    result = await db_session.execute(
        select(CredentialAudit)
        .where(CredentialAudit.destination_id == destination_id)
        .order_by(CredentialAudit.id)
    )
    return result.scalars().all()


def state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthorizationUrl:
    """Test authorization URL generation"""

    @pytest.mark.asyncio
    async def test_url_carries_required_parameters(self, manager, db_session, user, oauth_destination):
        destination_id = oauth_destination.id

        url = await manager.get_authorization_url(user.id, destination_id)

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://accounts.example.com/o/oauth2/auth"
        assert params["client_id"] == "client-123"
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "https://app.example.com/oauth/callback"
        assert params["scope"] == "drive.file offline_access"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert len(params["state"]) == 64

        row = await db_session.get(OAuthState, params["state"])
        assert row.destination_id == destination_id
        assert row.provider == "GoogleDrive"
        remaining = ensure_utc(row.expires_at) - utcnow()
        assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_marks_destination_authorizing_with_redacted_audit(
        self, manager, db_session, user, oauth_destination
    ):
        destination_id = oauth_destination.id

        await manager.get_authorization_url(user.id, destination_id)

        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.AUTHORIZING

        (audit,) = await audit_actions(db_session, destination_id)
        assert audit.action == "authorization_started"
        assert audit.new_credentials["secrets"]["clientSecret"] == "[REDACTED]"
        assert "client-secret-xyz" not in str(audit.old_credentials)

    @pytest.mark.asyncio
    async def test_authorized_destination_keeps_status(
        self, manager, db_session, user, oauth_destination, authorize_destination
    ):
        await authorize_destination(oauth_destination)
        destination_id = oauth_destination.id

        await manager.get_authorization_url(user.id, destination_id)

        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_each_url_has_a_fresh_state(self, manager, user, oauth_destination):
        first = await manager.get_authorization_url(user.id, oauth_destination.id)
        second = await manager.get_authorization_url(user.id, oauth_destination.id)

        assert state_from(first) != state_from(second)

    @pytest.mark.asyncio
    async def test_other_users_destination_is_not_found(self, manager, db_session, oauth_destination):
        with pytest.raises(ConfigError) as exc_info:
            await manager.get_authorization_url(999, oauth_destination.id)

        assert exc_info.value.message == "Destination not found"

    @pytest.mark.asyncio
    async def test_missing_client_fields(self, manager, db_session, user, oauth_type, cipher):
        destination = Destination(
            user_id=user.id,
            destination_type=oauth_type,
            credentials=DestinationCredentials.from_plain({"clientId": "client-123"}, cipher).to_storage(),
        )
        db_session.add(destination)
        await db_session.commit()
        user_id, destination_id = user.id, destination.id

        with pytest.raises(ConfigError) as exc_info:
            await manager.get_authorization_url(user_id, destination_id)

        assert exc_info.value.message == "Missing required OAuth fields"
        assert exc_info.value.context["missing_fields"] == ["clientSecret", "redirectUri"]

    @pytest.mark.asyncio
    async def test_missing_scopes(self, manager, db_session, user, oauth_type, oauth_destination):
        oauth_type.oauth_config = {
            "auth_url": "https://accounts.example.com/o/oauth2/auth",
            "token_url": "https://accounts.example.com/token",
        }
        await db_session.commit()
        user_id, destination_id = user.id, oauth_destination.id

        with pytest.raises(ConfigError):
            await manager.get_authorization_url(user_id, destination_id)


class TestCallback:
    """Test state verification and code exchange"""

    @pytest.mark.asyncio
    async def test_exchanges_code_and_stores_encrypted_tokens(
        self, manager, db_session, user, oauth_destination, provider, token_json, cipher
    ):
        destination_id = oauth_destination.id
        state = state_from(await manager.get_authorization_url(user.id, destination_id))
        provider.queue(token_json(access_token="ya29.access", refresh_token="1//refresh", expires_in=1800))

        result = await manager.handle_callback("auth-code-1", state)

        assert result == {"success": True, "destination_id": destination_id, "expires_in": 1800}

        form = provider.form()
        assert str(provider.requests[0].url) == "https://accounts.example.com/token"
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code-1"
        assert form["client_id"] == "client-123"
        assert form["client_secret"] == "client-secret-xyz"
        assert form["redirect_uri"] == "https://app.example.com/oauth/callback"

        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.AUTHORIZED
        assert cipher.decrypt(credentials.secrets.access_token) == "ya29.access"
        assert cipher.decrypt(credentials.secrets.refresh_token) == "1//refresh"
        assert "ya29.access" not in str(credentials.to_storage())

        expires_in = ensure_utc(credentials.token_expires_at) - utcnow()
        assert timedelta(minutes=29) < expires_in <= timedelta(minutes=30)

        audits = await audit_actions(db_session, destination_id)
        assert [a.action for a in audits] == ["authorization_started", "authorize"]
        assert audits[-1].new_credentials["secrets"]["accessToken"] == "[REDACTED]"

    @pytest.mark.asyncio
    async def test_state_is_single_use(
        self, manager, db_session, user, oauth_destination, provider, token_json
    ):
        state = state_from(await manager.get_authorization_url(user.id, oauth_destination.id))
        provider.queue(token_json())
        await manager.handle_callback("auth-code-1", state)

        with pytest.raises(StateError):
            await manager.handle_callback("auth-code-1", state)

        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_expired_state_is_rejected(
        self, manager, db_session, user, oauth_destination, provider
    ):
        db_session.add(OAuthState(
            state="e" * 64, user_id=user.id, destination_id=oauth_destination.id,
            provider="GoogleDrive", expires_at=utcnow() - timedelta(seconds=1),
        ))
        await db_session.commit()

        with pytest.raises(StateError) as exc_info:
            await manager.handle_callback("auth-code-1", "e" * 64)

        assert exc_info.value.message == "Invalid or expired state parameter"
        assert provider.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,state", [("", "f" * 64), ("auth-code-1", "")])
    async def test_missing_parameters(self, manager, provider, code, state):
        with pytest.raises(StateError):
            await manager.handle_callback(code, state)

        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_rejected_code_consumes_state(
        self, manager, db_session, user, oauth_destination, provider
    ):
        """Test a failed exchange cannot be replayed with the same state"""
        destination_id = oauth_destination.id
        state = state_from(await manager.get_authorization_url(user.id, destination_id))
        provider.queue(httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(TokenError):
            await manager.handle_callback("bad-code", state)

        count = await db_session.scalar(select(func.count()).select_from(OAuthState))
        assert count == 0
        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.AUTHORIZING

    @pytest.mark.asyncio
    async def test_storage_failure_after_exchange_persists_nothing(
        self, manager, db_session, user, oauth_destination, provider, token_json, monkeypatch
    ):
        """Test tokens and audit row are written together or not at all"""
        destination_id = oauth_destination.id
        state = state_from(await manager.get_authorization_url(user.id, destination_id))
        before = await stored_credentials(db_session, destination_id)
        audits_before = len(await audit_actions(db_session, destination_id))
        provider.queue(token_json(access_token="ya29.access"))

        real_commit = manager.store.commit

        async def commit_failing_after_exchange():
            if provider.calls:
                raise ConfigError("Credential store unavailable")
            await real_commit()

        monkeypatch.setattr(manager.store, "commit", commit_failing_after_exchange)

        with pytest.raises(ConfigError):
            await manager.handle_callback("auth-code-1", state)

        assert provider.calls == 1
        after = await stored_credentials(db_session, destination_id)
        assert after.to_storage() == before.to_storage()
        assert after.secrets.access_token is None
        assert len(await audit_actions(db_session, destination_id)) == audits_before


class TestRefresh:
    """Test refresh-ahead, retry and rotation"""

    @pytest.mark.asyncio
    async def test_no_refresh_token_fails_without_network(
        self, manager, oauth_destination, authorize_destination, provider
    ):
        await authorize_destination(oauth_destination, refresh_token=None)

        with pytest.raises(TokenError):
            await manager.refresh_tokens(oauth_destination.id)

        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_not_retried(
        self, manager, oauth_destination, authorize_destination, provider, sleeps
    ):
        await authorize_destination(oauth_destination)
        destination_id = oauth_destination.id
        provider.queue(httpx.Response(401, json={"error": "invalid_grant"}))

        with pytest.raises(TokenError) as exc_info:
            await manager.refresh_tokens(destination_id)

        assert exc_info.value.reauthorization_required is True
        assert provider.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_up_to_the_ceiling(
        self, manager, db_session, oauth_destination, authorize_destination, provider, sleeps, cipher
    ):
        await authorize_destination(oauth_destination, access_token="old-access")
        destination_id = oauth_destination.id
        provider.queue(httpx.ReadTimeout("timed out"))

        with pytest.raises(ProviderError):
            await manager.refresh_tokens(destination_id)

        assert provider.calls == 3
        assert sleeps == [1.0, 2.0]
        credentials = await stored_credentials(db_session, destination_id)
        assert cipher.decrypt(credentials.secrets.access_token) == "old-access"

    @pytest.mark.asyncio
    async def test_transient_error_then_success(
        self, manager, oauth_destination, authorize_destination, provider, token_json
    ):
        await authorize_destination(oauth_destination)
        provider.queue(httpx.Response(503), token_json(access_token="access-2"))

        credentials = await manager.refresh_tokens(oauth_destination.id)

        assert provider.calls == 2
        assert credentials.status == CredentialStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(
        self, manager, db_session, oauth_destination, authorize_destination, provider, token_json, cipher
    ):
        await authorize_destination(oauth_destination, refresh_token="refresh-0")
        destination_id = oauth_destination.id
        provider.queue(token_json(access_token="access-2", refresh_token="refresh-2"))

        await manager.refresh_tokens(destination_id)

        form = provider.form()
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-0"

        credentials = await stored_credentials(db_session, destination_id)
        assert cipher.decrypt(credentials.secrets.access_token) == "access-2"
        assert cipher.decrypt(credentials.secrets.refresh_token) == "refresh-2"

        audits = await audit_actions(db_session, destination_id)
        assert audits[-1].action == "refresh"

    @pytest.mark.asyncio
    async def test_omitted_refresh_token_is_kept(
        self, manager, db_session, oauth_destination, authorize_destination, provider, token_json, cipher
    ):
        await authorize_destination(oauth_destination, refresh_token="refresh-0")
        destination_id = oauth_destination.id
        provider.queue(token_json(access_token="access-2", refresh_token=None, expires_in=None))

        await manager.refresh_tokens(destination_id)

        credentials = await stored_credentials(db_session, destination_id)
        assert cipher.decrypt(credentials.secrets.refresh_token) == "refresh-0"
        expires_in = ensure_utc(credentials.token_expires_at) - utcnow()
        assert timedelta(minutes=59) < expires_in <= timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(
        self, manager, oauth_destination, authorize_destination, provider
    ):
        await authorize_destination(oauth_destination)
        provider.queue(httpx.Response(200, json={"token_type": "Bearer"}))

        with pytest.raises(ProviderError):
            await manager.refresh_tokens(oauth_destination.id)

        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_refresh_ahead_threshold(
        self, manager, oauth_destination, authorize_destination, provider, token_json
    ):
        destination_id = oauth_destination.id
        provider.queue(token_json(access_token="access-2"))

        await authorize_destination(oauth_destination, expires_in=timedelta(minutes=10))
        await manager.check_and_refresh_tokens(destination_id)
        assert provider.calls == 0

        await authorize_destination(oauth_destination, expires_in=timedelta(minutes=2))
        await manager.check_and_refresh_tokens(destination_id)
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_decrypted_credentials(
        self, manager, oauth_destination, authorize_destination
    ):
        await authorize_destination(oauth_destination, access_token="live-token")

        credentials = await manager.get_decrypted_credentials(oauth_destination.id)

        assert credentials.access_token.get_secret_value() == "live-token"
        assert credentials.client_secret.get_secret_value() == "client-secret-xyz"
        assert "live-token" not in repr(credentials)

    @pytest.mark.asyncio
    async def test_fresh_token_is_not_refreshed_when_only_expiring(
        self, manager, db_session, oauth_destination, authorize_destination, provider, cipher
    ):
        await authorize_destination(oauth_destination, access_token="access-0")
        destination_id = oauth_destination.id
        audits_before = len(await audit_actions(db_session, destination_id))

        credentials = await manager.refresh_tokens(destination_id, only_if_expiring=True)

        assert provider.calls == 0
        assert credentials.status == CredentialStatus.AUTHORIZED
        assert cipher.decrypt(credentials.secrets.access_token) == "access-0"
        assert len(await audit_actions(db_session, destination_id)) == audits_before


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoked_destination_fails_fast(
        self, manager, db_session, oauth_destination, authorize_destination, provider, cipher
    ):
        await authorize_destination(oauth_destination)
        destination_id = oauth_destination.id

        result = await manager.revoke_tokens(destination_id)

        assert result == {"success": True, "destination_id": destination_id}
        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.REVOKED
        assert credentials.secrets.access_token is None
        assert credentials.secrets.refresh_token is None
        assert cipher.decrypt(credentials.secrets.client_secret) == "client-secret-xyz"

        with pytest.raises(TokenError):
            await manager.get_decrypted_credentials(destination_id)
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_revoked_destination_can_be_authorized_again(
        self, manager, db_session, user, oauth_destination, authorize_destination
    ):
        await authorize_destination(oauth_destination)
        user_id, destination_id = user.id, oauth_destination.id
        await manager.revoke_tokens(destination_id)

        await manager.get_authorization_url(user_id, destination_id)

        credentials = await stored_credentials(db_session, destination_id)
        assert credentials.status == CredentialStatus.AUTHORIZING
        actions = [a.action for a in await audit_actions(db_session, destination_id)]
        assert actions == ["revoke", "authorization_started"]
