"""OAuth token refresh and write-back.

:class:`OAuthLifecycleManager` keeps stored OAuth credentials fresh. The
provider-specific token exchange is delegated to a :class:`TokenRefresher`;
:class:`OAuth2TokenRefresher` is the default strategy, a plain RFC 6749
``refresh_token`` grant against a configurable token endpoint.

The network call always happens outside the store lock. Only the final
write-back runs inside :meth:`~authprofiles.store.lock.StoreAccessor.with_lock`,
and it re-reads the store first so that a refresh completed concurrently by
another process is never clobbered by an older token.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Mapping, Optional, Protocol

import httpx

from authprofiles.exceptions import RefreshFailed
from authprofiles.models import (
    DEFAULT_OAUTH_WARN_MS,
    AuthProfile,
    AuthProfileStore,
    OAuthCredential,
    OAuthProviderConfig,
    Settings,
)
from authprofiles.store.lock import StoreAccessor
from authprofiles.timeutil import MS_PER_SECOND, Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_REFRESH_TIMEOUT_SECONDS = 30.0


class TokenRefresher(Protocol):
    """Strategy that exchanges a refresh token for a new access token."""

    def refresh(self, credential: OAuthCredential, now: int) -> OAuthCredential:
        """Return a new credential; raise :class:`RefreshFailed` on failure."""
        ...


def credential_from_token_response(
    base: OAuthCredential, token_data: Mapping[str, Any], now: int
) -> OAuthCredential:
    """Merge an OAuth token endpoint response into *base*.

    A rotated ``refresh_token`` replaces the old one; when the response
    omits it the old refresh token is kept. ``expires_in`` defaults to one
    hour.
    """
    expires_in = token_data.get("expires_in")
    if expires_in is None:
        expires_in = DEFAULT_EXPIRES_IN_SECONDS
    return base.model_copy(
        update={
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token") or base.refresh_token,
            "expires": now + int(float(expires_in) * MS_PER_SECOND),
        }
    )


class OAuth2TokenRefresher:
    """Refresh tokens with the standard ``refresh_token`` grant over ``httpx``.

    Transport errors and 5xx responses are retried up to ``max_retries``
    times with exponential backoff (1 s, 2 s, 4 s, ...). 4xx responses mean
    the refresh token was revoked or expired and fail immediately.

    Args:
        token_url: The provider's token endpoint.
        client_id: OAuth client id, sent when set.
        client_secret: OAuth client secret, sent when set.
        max_retries: Retries after the first attempt for retryable errors.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        token_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        max_retries: int = 2,
        timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_retries = max_retries
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: OAuthProviderConfig) -> OAuth2TokenRefresher:
        """Build a refresher from a provider's settings entry."""
        return cls(
            token_url=config.token_url,
            client_id=resolve_client_id(config),
            client_secret=resolve_client_secret(config),
        )

    def refresh(self, credential: OAuthCredential, now: int) -> OAuthCredential:
        if not credential.refresh_token:
            raise RefreshFailed("Credential has no refresh token")

        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret

        response = self._post_with_retry(data)
        if response.status_code >= 400:
            raise RefreshFailed(
                f"Token refresh failed with status {response.status_code}",
                retryable=response.status_code >= 500,
            )

        try:
            token_data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise RefreshFailed("Token refresh response is not valid JSON") from exc
        if not isinstance(token_data, dict) or "access_token" not in token_data:
            raise RefreshFailed("Token refresh response missing 'access_token' field")

        return credential_from_token_response(credential, token_data, now)

    def _post_with_retry(self, data: dict[str, str]) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = httpx.post(
                    self.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self.max_retries:
                    delay = 2**attempt
                    logger.debug(
                        "Token endpoint unreachable (%s), retrying in %ss (attempt %d/%d)",
                        exc,
                        delay,
                        attempt + 1,
                        self.max_retries,
                    )
                    time.sleep(delay)
                    continue
                raise RefreshFailed(
                    f"Token refresh failed after {self.max_retries + 1} attempts: {exc}",
                    retryable=True,
                ) from exc

            if response.status_code >= 500 and attempt < self.max_retries:
                delay = 2**attempt
                logger.debug(
                    "Token endpoint returned %d, retrying in %ss (attempt %d/%d)",
                    response.status_code,
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
                time.sleep(delay)
                continue
            return response

        # Only reachable if max_retries is negative.
        raise RefreshFailed(str(last_error), retryable=True)  # pragma: no cover


def resolve_client_id(config: OAuthProviderConfig) -> Optional[str]:
    """Return the client id, preferring the environment variable when named."""
    if config.client_id_env:
        value = os.environ.get(config.client_id_env)
        if value:
            return value
    return config.client_id


def resolve_client_secret(config: OAuthProviderConfig) -> Optional[str]:
    """Return the client secret from ``client_secret_env``, if configured."""
    if config.client_secret_env:
        return os.environ.get(config.client_secret_env) or None
    return None


class OAuthLifecycleManager:
    """Refresh stored OAuth credentials and persist the result.

    Refreshers are looked up per provider: first in the explicit
    ``refreshers`` mapping, then built from ``settings.oauth_providers``.

    Args:
        accessor: Store accessor used for the snapshot read and write-back.
        refreshers: Explicit provider -> :class:`TokenRefresher` mapping.
        settings: Settings whose ``oauth_providers`` supply default refreshers.
        clock: Epoch-ms clock.
        warn_after_ms: Window within which a credential counts as expiring.
    """

    def __init__(
        self,
        accessor: StoreAccessor,
        refreshers: Optional[Mapping[str, TokenRefresher]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
        warn_after_ms: int = DEFAULT_OAUTH_WARN_MS,
    ) -> None:
        self._accessor = accessor
        self._refreshers: dict[str, TokenRefresher] = dict(refreshers or {})
        self._settings = settings
        self._clock = clock
        self._warn_after_ms = warn_after_ms

    def get_refresher(self, provider: str) -> TokenRefresher:
        """Return the refresher for *provider*.

        Raises:
            RefreshFailed: If no refresher is registered or configured.
        """
        refresher = self._refreshers.get(provider)
        if refresher is not None:
            return refresher
        if self._settings is not None:
            config = self._settings.oauth_providers.get(provider)
            if config is not None:
                refresher = OAuth2TokenRefresher.from_config(config)
                self._refreshers[provider] = refresher
                return refresher
        raise RefreshFailed(f"No OAuth token refresher configured for provider '{provider}'")

    def refresh(self, profile: AuthProfile) -> OAuthCredential:
        """Refresh *profile*'s OAuth credential and write it back.

        Returns:
            The credential now in effect. This may be a copy another
            process stored while this one was refreshing.

        Raises:
            RefreshFailed: If the profile is not OAuth, has no refresh token,
                or the refresher fails.
        """
        profile_id = profile.profile_id
        credential = profile.credential
        if not isinstance(credential, OAuthCredential):
            raise RefreshFailed(
                f"Profile '{profile_id}' is not an OAuth credential", profile_id=profile_id
            )

        now = self._clock()
        source = credential
        stored = self._accessor.read().profiles.get(profile_id)
        if isinstance(stored, OAuthCredential):
            if self._is_fresher(stored, credential, now):
                logger.debug("Profile %s already refreshed elsewhere", profile_id)
                return stored
            if stored.refresh_token:
                # The stored copy may hold a rotated refresh token.
                source = stored

        if not source.refresh_token:
            raise RefreshFailed(
                f"Profile '{profile_id}' has no refresh token; log in again",
                profile_id=profile_id,
            )

        refresher = self.get_refresher(source.provider)
        logger.info("Refreshing OAuth credential for %s", profile_id)
        try:
            refreshed = refresher.refresh(source, now)
        except RefreshFailed as exc:
            if exc.profile_id is None:
                exc.profile_id = profile_id
            logger.warning("Refresh failed for %s: %s", profile_id, exc)
            raise

        return self._write_back(profile_id, source, refreshed)

    def _is_fresher(
        self, stored: OAuthCredential, credential: OAuthCredential, now: int
    ) -> bool:
        if stored.expires is None:
            return False
        if credential.expires is not None and stored.expires <= credential.expires:
            return False
        return stored.expires - now > self._warn_after_ms

    def _write_back(
        self, profile_id: str, source: OAuthCredential, refreshed: OAuthCredential
    ) -> OAuthCredential:
        result: dict[str, OAuthCredential] = {"credential": refreshed}

        def update(store: AuthProfileStore) -> bool:
            current = store.profiles.get(profile_id)
            if current is None:
                logger.info("Profile %s was removed during refresh, not restoring it", profile_id)
                return False
            if not isinstance(current, OAuthCredential):
                raise RefreshFailed(
                    f"Profile '{profile_id}' was replaced during refresh "
                    f"(now {current.type})",
                    profile_id=profile_id,
                )
            if current.refresh_token != source.refresh_token:
                logger.info("Profile %s changed during refresh, keeping stored copy", profile_id)
                result["credential"] = current
                return False
            if (
                current.expires is not None
                and refreshed.expires is not None
                and current.expires > refreshed.expires
            ):
                result["credential"] = current
                return False
            store.profiles[profile_id] = refreshed
            return True

        self._accessor.with_lock(update)
        return result["credential"]
