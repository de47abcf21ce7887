"""
Destination credential lifecycle.

Modules:
    cipher: AES-256-GCM encryption of single credential fields
    store: Persistence of destinations, credential audit rows and OAuth states
    oauth_manager: Authorization URL, callback, refresh-ahead, revocation

Usage:
    from credentials.oauth_manager import OAuthManager

    manager = OAuthManager(session)
    credentials = await manager.get_decrypted_credentials(destination_id)
"""
