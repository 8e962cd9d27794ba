"""OAuth token lifecycle: background refresh and interactive login."""

from authprofiles.oauth.interactive import (
    AuthorizationCodeFlow,
    InteractiveAuth,
    OAuthPrompter,
    generate_pkce_pair,
    is_remote_environment,
    run_interactive_login,
)
from authprofiles.oauth.lifecycle import (
    OAuth2TokenRefresher,
    OAuthLifecycleManager,
    TokenRefresher,
)

__all__ = [
    "AuthorizationCodeFlow",
    "InteractiveAuth",
    "OAuth2TokenRefresher",
    "OAuthLifecycleManager",
    "OAuthPrompter",
    "TokenRefresher",
    "generate_pkce_pair",
    "is_remote_environment",
    "run_interactive_login",
]
