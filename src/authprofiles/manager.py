"""Auth profile manager -- the consumer-facing API.

:class:`AuthProfileManager` is what a host application (or the CLI) talks
to. It ties together the locked store accessor, the failover selector, the
cooldown policy, the OAuth lifecycle and the repair passes, so callers
never touch the store file directly.

For most use cases, call :func:`create_default_manager` to get a manager
wired from the user's settings.

Example::

    manager = create_default_manager()
    profile = manager.resolve_profile("anthropic")
    try:
        call_provider(profile.credential)
    except BillingError:
        manager.report_failure(profile.profile_id, FailureKind.BILLING)
    else:
        manager.report_success(profile.profile_id)
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from authprofiles.config import resolve_settings, resolve_store_path
from authprofiles.cooldown import record_failure, record_success
from authprofiles.exceptions import (
    InteractiveAuthError,
    InvalidUsageError,
    ProfileNotFoundError,
)
from authprofiles.health import build_health_summary
from authprofiles.migration import (
    DEPRECATED_PROFILE_IDS,
    ConfigPatcher,
    MigrationResult,
    ProfileIdMismatch,
    detect_profile_id_mismatches,
    prune_dangling_references,
    prune_deprecated_profiles,
    repair_detected_profile_ids,
    repair_profile_id_mismatch,
)
from authprofiles.models import (
    AuthProfile,
    AuthProfileStore,
    Credential,
    FailureKind,
    OAuthCredential,
    ProfileHealth,
    Settings,
    build_profile_id,
    normalize_provider_id,
)
from authprofiles.oauth.interactive import (
    DEFAULT_LOGIN_TIMEOUT_SECONDS,
    AuthorizationCodeFlow,
    InteractiveAuth,
    OAuthPrompter,
    run_interactive_login,
)
from authprofiles.oauth.lifecycle import OAuthLifecycleManager, TokenRefresher
from authprofiles.selector import FailoverSelector
from authprofiles.store.lock import StoreAccessor
from authprofiles.timeutil import Clock, now_ms

logger = logging.getLogger(__name__)

FlowFactory = Callable[[], InteractiveAuth]


class AuthProfileManager:
    """Resolve, report on and maintain auth profiles in one store.

    Args:
        accessor: Locked accessor for the store file.
        settings: Effective settings (cooldowns, warn window, OAuth providers).
        clock: Epoch-ms clock.
        refreshers: Explicit provider -> token refresher overrides.
        flows: Provider -> interactive flow factory overrides.
    """

    def __init__(
        self,
        accessor: StoreAccessor,
        settings: Optional[Settings] = None,
        clock: Clock = now_ms,
        refreshers: Optional[Mapping[str, TokenRefresher]] = None,
        flows: Optional[Mapping[str, FlowFactory]] = None,
    ) -> None:
        self._accessor = accessor
        self._settings = settings or Settings()
        self._clock = clock
        self._lifecycle = OAuthLifecycleManager(
            accessor,
            refreshers=refreshers,
            settings=self._settings,
            clock=clock,
            warn_after_ms=self._settings.warn_after_ms,
        )
        self._selector = FailoverSelector(
            accessor,
            lifecycle=self._lifecycle,
            warn_after_ms=self._settings.warn_after_ms,
            clock=clock,
        )
        self._flows: dict[str, FlowFactory] = {
            normalize_provider_id(k): v for k, v in (flows or {}).items()
        }

    @property
    def accessor(self) -> StoreAccessor:
        return self._accessor

    @property
    def settings(self) -> Settings:
        return self._settings

    def now(self) -> int:
        """Current time in epoch ms, from the injected clock."""
        return self._clock()

    # -- resolution -------------------------------------------------------

    def resolve(self, provider: str) -> Credential:
        """Return a usable credential for *provider* (see :class:`FailoverSelector`)."""
        return self._selector.resolve(provider)

    def resolve_profile(self, provider: str) -> AuthProfile:
        """Return the usable profile for *provider*, id included."""
        return self._selector.resolve_profile(provider)

    # -- outcome reporting ------------------------------------------------

    def report_failure(self, profile_id: str, kind: FailureKind) -> None:
        """Record a call-time failure; may disable or cool down the profile.

        Reports for a profile that no longer exists are ignored.
        """
        kind = FailureKind(kind)
        now = self._clock()
        cooldowns = self._settings.cooldowns

        def update(store: AuthProfileStore) -> bool:
            if profile_id not in store.profiles:
                logger.debug("Ignoring %s failure for unknown profile %s", kind.value, profile_id)
                return False
            record_failure(store, profile_id, kind, now, cooldowns)
            return True

        self._accessor.with_lock(update)

    def report_success(self, profile_id: str) -> None:
        """Record a successful call; resets the breaker and sets last-good."""
        now = self._clock()

        def update(store: AuthProfileStore) -> bool:
            if profile_id not in store.profiles:
                logger.debug("Ignoring success for unknown profile %s", profile_id)
                return False
            record_success(store, profile_id, now)
            return True

        self._accessor.with_lock(update)

    # -- profile CRUD -----------------------------------------------------

    def upsert_profile(self, profile_id: str, credential: Credential) -> AuthProfile:
        """Create or replace a profile.

        New ids are appended to the end of their provider's order. Usage
        stats of an existing profile are kept.
        """
        if not profile_id.strip():
            raise InvalidUsageError("Profile id must not be empty")

        def update(store: AuthProfileStore) -> bool:
            previous = store.profiles.get(profile_id)
            store.profiles[profile_id] = credential
            if previous is not None and previous.provider != credential.provider:
                _drop_from_order(store, previous.provider, profile_id)
                if store.last_good.get(previous.provider) == profile_id:
                    del store.last_good[previous.provider]
            order = store.order.setdefault(credential.provider, [])
            if profile_id not in order:
                order.append(profile_id)
            return True

        self._accessor.with_lock(update)
        logger.info("Stored %s credential as %s", credential.type, profile_id)
        return AuthProfile(profile_id=profile_id, credential=credential)

    def remove_profile(self, profile_id: str) -> None:
        """Delete a profile along with its order, usage stats and last-good entries.

        Raises:
            ProfileNotFoundError: If *profile_id* is not in the store.
        """

        def update(store: AuthProfileStore) -> bool:
            credential = store.profiles.pop(profile_id, None)
            if credential is None:
                raise ProfileNotFoundError(profile_id)
            for provider in list(store.order):
                _drop_from_order(store, provider, profile_id)
            store.usage_stats.pop(profile_id, None)
            for provider in [p for p, pid in store.last_good.items() if pid == profile_id]:
                del store.last_good[provider]
            return True

        self._accessor.with_lock(update)
        logger.info("Removed profile %s", profile_id)

    def get_profile(self, profile_id: str) -> AuthProfile:
        """Return one profile from a snapshot.

        Raises:
            ProfileNotFoundError: If *profile_id* is not in the store.
        """
        profile = self._accessor.read().get_profile(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        return profile

    def list_profiles(self, provider: Optional[str] = None) -> list[AuthProfile]:
        """Return all profiles (optionally for one provider), sorted by provider then id."""
        store = self._accessor.read()
        wanted = normalize_provider_id(provider) if provider else None
        profiles = [
            AuthProfile(profile_id=pid, credential=cred)
            for pid, cred in store.profiles.items()
            if wanted is None or cred.provider == wanted
        ]
        return sorted(profiles, key=lambda p: (p.provider, p.profile_id))

    # -- ordering ---------------------------------------------------------

    def get_order(self, provider: str) -> list[str]:
        """Return the explicit preference order for *provider* (may be empty)."""
        return list(self._accessor.read().order.get(normalize_provider_id(provider), []))

    def set_order(self, provider: str, profile_ids: list[str]) -> list[str]:
        """Replace *provider*'s preference order.

        An empty list clears the order, so ``last_good`` is used instead.

        Raises:
            ProfileNotFoundError: If an id is not in the store.
            InvalidUsageError: If an id belongs to another provider.
        """
        provider = normalize_provider_id(provider)
        ids = list(dict.fromkeys(profile_ids))

        def update(store: AuthProfileStore) -> bool:
            for pid in ids:
                credential = store.profiles.get(pid)
                if credential is None:
                    raise ProfileNotFoundError(pid)
                if credential.provider != provider:
                    raise InvalidUsageError(
                        f"Profile '{pid}' belongs to '{credential.provider}', not '{provider}'"
                    )
            if ids:
                if store.order.get(provider) == ids:
                    return False
                store.order[provider] = ids
            elif store.order.pop(provider, None) is None:
                return False
            return True

        self._accessor.with_lock(update)
        return ids

    # -- health -----------------------------------------------------------

    def health_summary(self, warn_after_ms: Optional[int] = None) -> list[ProfileHealth]:
        """Classify every stored profile at the current time."""
        if warn_after_ms is None:
            warn_after_ms = self._settings.warn_after_ms
        return build_health_summary(self._accessor.read(), self._clock(), warn_after_ms)

    # -- OAuth ------------------------------------------------------------

    def refresh_profile(self, profile_id: str) -> OAuthCredential:
        """Force a refresh of an OAuth profile and persist the result."""
        return self._lifecycle.refresh(self.get_profile(profile_id))

    def get_flow(self, provider: str) -> InteractiveAuth:
        """Return the interactive login flow for *provider*.

        Raises:
            InteractiveAuthError: If neither a flow factory nor an OAuth
                provider entry in the settings is available.
        """
        provider = normalize_provider_id(provider)
        factory = self._flows.get(provider)
        if factory is not None:
            return factory()
        config = self._settings.oauth_providers.get(provider)
        if config is None:
            raise InteractiveAuthError(
                f"No OAuth settings for provider '{provider}'; add it under "
                f"'oauth_providers' in the settings file"
            )
        return AuthorizationCodeFlow.from_config(config, clock=self._clock)

    def login(
        self,
        provider: str,
        prompter: OAuthPrompter,
        profile_id: Optional[str] = None,
        remote: Optional[bool] = None,
        timeout_seconds: float = DEFAULT_LOGIN_TIMEOUT_SECONDS,
    ) -> AuthProfile:
        """Run an interactive login and store the resulting credential.

        The profile id defaults to ``<provider>:<email>`` when the provider
        reports an email, else ``<provider>:default``. On timeout or failure
        the store is not touched.
        """
        provider = normalize_provider_id(provider)
        flow = self.get_flow(provider)
        credential = run_interactive_login(
            flow, provider, prompter, remote=remote, timeout_seconds=timeout_seconds
        )
        if profile_id is None:
            profile_id = build_profile_id(provider, credential.email)
        return self.upsert_profile(profile_id, credential)

    # -- repair -----------------------------------------------------------

    def _preview(self, run: Callable[[AuthProfileStore], MigrationResult]) -> MigrationResult:
        snapshot = self._accessor.read().model_copy(deep=True)
        return run(snapshot)

    def _apply(self, run: Callable[[AuthProfileStore], MigrationResult]) -> MigrationResult:
        outcome: dict[str, MigrationResult] = {}

        def update(store: AuthProfileStore) -> bool:
            outcome["result"] = run(store)
            return outcome["result"].changed

        self._accessor.with_lock(update)
        result = outcome["result"]
        for change in result.changes:
            logger.info("Repair: %s", change)
        return result

    def preview_repair_profile_id(
        self, provider: str, legacy_profile_id: str, target_profile_id: str
    ) -> MigrationResult:
        return self._preview(
            lambda store: repair_profile_id_mismatch(
                store, provider, legacy_profile_id, target_profile_id
            )
        )

    def apply_repair_profile_id(
        self,
        provider: str,
        legacy_profile_id: str,
        target_profile_id: str,
        config_patcher: Optional[ConfigPatcher] = None,
    ) -> MigrationResult:
        return self._apply(
            lambda store: repair_profile_id_mismatch(
                store, provider, legacy_profile_id, target_profile_id, config_patcher
            )
        )

    def detect_profile_id_mismatches(self) -> list[ProfileIdMismatch]:
        """List OAuth profiles stored under a legacy default id."""
        return detect_profile_id_mismatches(self._accessor.read())

    def preview_repair_detected_profile_ids(self) -> MigrationResult:
        return self._preview(repair_detected_profile_ids)

    def apply_repair_detected_profile_ids(
        self, config_patcher: Optional[ConfigPatcher] = None
    ) -> MigrationResult:
        return self._apply(lambda store: repair_detected_profile_ids(store, config_patcher))

    def preview_prune_deprecated(
        self, deprecated_ids: Mapping[str, str] = DEPRECATED_PROFILE_IDS
    ) -> MigrationResult:
        return self._preview(lambda store: prune_deprecated_profiles(store, deprecated_ids))

    def apply_prune_deprecated(
        self,
        deprecated_ids: Mapping[str, str] = DEPRECATED_PROFILE_IDS,
        config_patcher: Optional[ConfigPatcher] = None,
    ) -> MigrationResult:
        return self._apply(
            lambda store: prune_deprecated_profiles(store, deprecated_ids, config_patcher)
        )

    def preview_prune_dangling(self) -> MigrationResult:
        return self._preview(prune_dangling_references)

    def apply_prune_dangling(self) -> MigrationResult:
        return self._apply(prune_dangling_references)


def _drop_from_order(store: AuthProfileStore, provider: str, profile_id: str) -> None:
    ids = store.order.get(provider)
    if not ids or profile_id not in ids:
        return
    remaining = [pid for pid in ids if pid != profile_id]
    if remaining:
        store.order[provider] = remaining
    else:
        del store.order[provider]


def create_default_manager(
    settings: Optional[Settings] = None,
    clock: Clock = now_ms,
) -> AuthProfileManager:
    """Create a manager for the store named by *settings*.

    Args:
        settings: Effective settings; resolved from the settings file and
            environment when omitted.
        clock: Epoch-ms clock.
    """
    if settings is None:
        settings = resolve_settings()
    accessor = StoreAccessor(resolve_store_path(settings), lock_timeout=settings.lock_timeout_seconds)
    return AuthProfileManager(accessor, settings=settings, clock=clock)
