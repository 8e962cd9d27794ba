"""Canonical Pydantic models shared across all authprofiles modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Store models** -- serialised as the JSON store file:
    :class:`ApiKeyCredential`, :class:`TokenCredential`,
    :class:`OAuthCredential` (the closed :data:`Credential` union),
    :class:`UsageStats` and :class:`AuthProfileStore`.

**Runtime models** -- produced by the classifier and selector:
    :class:`AuthProfile`, :class:`HealthStatus`, :class:`HealthResult`,
    :class:`ProfileHealth`, :class:`CandidateDiagnostic`.

**Configuration models** -- serialised as the settings file:
    :class:`CooldownConfig`, :class:`OAuthProviderConfig`, :class:`Settings`.

Store models use camelCase aliases on disk (``accessToken``, ``usageStats``)
and snake_case attributes in Python. Timestamps are epoch milliseconds.
"""

from __future__ import annotations

import enum
import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from authprofiles.timeutil import MS_PER_HOUR, format_remaining_short

STORE_VERSION = 1

DEFAULT_OAUTH_WARN_MS = 24 * MS_PER_HOUR
"""Credentials expiring within this window classify as ``expiring``."""

_PROVIDER_ALIASES = {
    "z.ai": "zai",
    "z-ai": "zai",
}


def normalize_provider_id(provider: str) -> str:
    """Return the canonical lowercase identifier for *provider*."""
    normalized = provider.strip().lower()
    return _PROVIDER_ALIASES.get(normalized, normalized)


def build_profile_id(provider: str, name: Optional[str] = None) -> str:
    """Build a ``"<provider>:<label>"`` profile id.

    The label is slugified (lowercase, runs of anything other than
    ``[a-z0-9._@-]`` collapsed to ``-``) and defaults to ``default``.

    Example::

        >>> build_profile_id("Anthropic", "Work Account")
        'anthropic:work-account'
    """
    slug = re.sub(r"[^a-z0-9._@-]+", "-", (name or "").strip().lower()).strip("-")
    return f"{normalize_provider_id(provider)}:{slug or 'default'}"


class _StoreModel(BaseModel):
    """Base for models persisted in the store file (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Credentials ---


class _CredentialBase(_StoreModel):
    provider: str
    email: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = normalize_provider_id(value)
        if not normalized:
            raise ValueError("provider must not be empty")
        return normalized


class ApiKeyCredential(_CredentialBase):
    """A static API key. Never expires on its own."""

    type: Literal["api_key"] = "api_key"
    key: str = Field(repr=False)


class TokenCredential(_CredentialBase):
    """A pasted bearer/setup token with an optional expiry (epoch ms)."""

    type: Literal["token"] = "token"
    token: str = Field(repr=False)
    expires: Optional[int] = None


class OAuthCredential(_CredentialBase):
    """An OAuth access token with an optional refresh token.

    ``expires`` is required by new flows; legacy files that omit it load
    fine and classify as ``missing``.
    """

    type: Literal["oauth"] = "oauth"
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


Credential = Annotated[
    Union[ApiKeyCredential, TokenCredential, OAuthCredential],
    Field(discriminator="type"),
]
"""Closed tagged union of credential kinds; unknown ``type`` tags are rejected."""

credential_adapter: TypeAdapter[Credential] = TypeAdapter(Credential)


def credential_expires(credential: Credential) -> Optional[int]:
    """Return the credential's expiry in epoch ms, or ``None`` (api keys never expire)."""
    if isinstance(credential, ApiKeyCredential):
        return None
    return credential.expires


def credential_secret(credential: Credential) -> str:
    """Return the secret a caller sends to the provider."""
    if isinstance(credential, ApiKeyCredential):
        return credential.key
    if isinstance(credential, TokenCredential):
        return credential.token
    return credential.access_token


def mask_secret(secret: str) -> str:
    """Return a short, non-reversible preview such as ``sk-a...9f2c``."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


# --- Store ---


class UsageStats(_StoreModel):
    """Per-profile failure/success bookkeeping consumed by the cooldown policy."""

    disabled_until: Optional[int] = None
    disabled_reason: Optional[str] = None
    cooldown_until: Optional[int] = None
    failure_count: int = 0
    last_failure_at: Optional[int] = None
    last_success_at: Optional[int] = None


class AuthProfile(BaseModel):
    """One named credential instance for one provider."""

    profile_id: str
    credential: Credential

    @property
    def provider(self) -> str:
        return self.credential.provider

    @property
    def type(self) -> str:
        return self.credential.type


class AuthProfileStore(_StoreModel):
    """The persisted aggregate: profiles, order, usage stats and last-good hints.

    Mutate only inside :meth:`~authprofiles.store.lock.StoreAccessor.with_lock`.
    """

    version: int = STORE_VERSION
    profiles: dict[str, Credential] = Field(default_factory=dict)
    order: dict[str, list[str]] = Field(default_factory=dict)
    usage_stats: dict[str, UsageStats] = Field(default_factory=dict)
    last_good: dict[str, str] = Field(default_factory=dict)

    def get_profile(self, profile_id: str) -> Optional[AuthProfile]:
        """Return the profile for *profile_id*, or ``None`` if absent."""
        credential = self.profiles.get(profile_id)
        if credential is None:
            return None
        return AuthProfile(profile_id=profile_id, credential=credential)

    def profile_ids_for(self, provider: str) -> list[str]:
        """Return every profile id whose credential belongs to *provider*."""
        provider = normalize_provider_id(provider)
        return [pid for pid, cred in self.profiles.items() if cred.provider == provider]

    def ensure_stats(self, profile_id: str) -> UsageStats:
        """Return the usage stats for *profile_id*, creating an empty entry."""
        stats = self.usage_stats.get(profile_id)
        if stats is None:
            stats = UsageStats()
            self.usage_stats[profile_id] = stats
        return stats


# --- Runtime ---


class FailureKind(str, enum.Enum):
    """Categories of call-time failures reported against a profile."""

    BILLING = "billing"
    TRANSIENT = "transient"


class HealthStatus(str, enum.Enum):
    """Health of a profile at a point in time."""

    OK = "ok"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    MISSING = "missing"
    DISABLED = "disabled"
    COOLING_DOWN = "cooling-down"

    @property
    def usable(self) -> bool:
        return self in (HealthStatus.OK, HealthStatus.EXPIRING)


class HealthResult(BaseModel):
    """Output of :func:`~authprofiles.health.classify`."""

    status: HealthStatus
    remaining_ms: Optional[int] = None
    reason: Optional[str] = None
    until: Optional[int] = None


class ProfileHealth(BaseModel):
    """One row of :func:`~authprofiles.health.build_health_summary`."""

    profile_id: str
    provider: str
    type: str
    status: HealthStatus
    remaining_ms: Optional[int] = None
    reason: Optional[str] = None
    until: Optional[int] = None


class CandidateDiagnostic(BaseModel):
    """Why a candidate profile was skipped during failover."""

    profile_id: str
    status: HealthStatus
    remaining_ms: Optional[int] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    def describe(self) -> str:
        """Render a one-line, human-readable explanation."""
        remaining = format_remaining_short(self.remaining_ms)
        if self.status == HealthStatus.DISABLED:
            reason = f" ({self.reason})" if self.reason else ""
            text = f"{self.profile_id} is disabled{reason} for {remaining}"
        elif self.status == HealthStatus.COOLING_DOWN:
            text = f"{self.profile_id} is cooling down for {remaining}"
        elif self.status == HealthStatus.MISSING:
            text = f"{self.profile_id} is missing"
        else:
            text = f"{self.profile_id} is {self.status.value}"
        if self.detail:
            text += f" ({self.detail})"
        return text


# --- Configuration ---


class CooldownConfig(BaseModel):
    """Backoff knobs for the cooldown policy."""

    billing_backoff_hours: float = Field(
        default=5.0, gt=0, description="Base backoff after a billing failure"
    )
    billing_backoff_hours_by_provider: dict[str, float] = Field(
        default_factory=dict, description="Per-provider base backoff overrides"
    )
    billing_max_hours: float = Field(
        default=24.0, gt=0, description="Cap for billing backoff"
    )
    failure_window_hours: float = Field(
        default=24.0, gt=0, description="Failures older than this restart the counter"
    )
    transient_failure_threshold: int = Field(
        default=3, ge=1, description="Transient failures that open the circuit breaker"
    )
    transient_cooldown_minutes: float = Field(
        default=5.0, gt=0, description="Length of the transient cooldown window"
    )

    @field_validator("billing_backoff_hours_by_provider")
    @classmethod
    def _normalize_override_keys(cls, value: dict[str, float]) -> dict[str, float]:
        return {normalize_provider_id(k): v for k, v in value.items()}


class OAuthProviderConfig(BaseModel):
    """Endpoints and client registration for a provider's generic OAuth2 flow."""

    token_url: str
    authorization_url: Optional[str] = None
    client_id: Optional[str] = None
    client_id_env: Optional[str] = Field(
        default=None, description="Environment variable holding the client id"
    )
    client_secret_env: Optional[str] = Field(
        default=None, description="Environment variable holding the client secret"
    )
    redirect_uri: str = "http://127.0.0.1:1455/oauth-callback"
    scopes: list[str] = Field(default_factory=list)


class Settings(BaseModel):
    """User-wide settings persisted at ``~/.config/authprofiles/config.json``.

    Loaded by :func:`~authprofiles.config.load_settings`. See
    :func:`~authprofiles.config.resolve_settings` for how environment
    variables and CLI flags override these values.
    """

    store_path: Optional[str] = None
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    warn_after_ms: int = Field(default=DEFAULT_OAUTH_WARN_MS, ge=0)
    cooldowns: CooldownConfig = Field(default_factory=CooldownConfig)
    oauth_providers: dict[str, OAuthProviderConfig] = Field(default_factory=dict)

    @field_validator("oauth_providers")
    @classmethod
    def _normalize_provider_keys(
        cls, value: dict[str, OAuthProviderConfig]
    ) -> dict[str, OAuthProviderConfig]:
        return {normalize_provider_id(k): v for k, v in value.items()}
