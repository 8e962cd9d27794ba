"""Interactive OAuth2 Authorization Code login with PKCE.

The flow is split across two seams so that the UI stays outside the core:

* :class:`InteractiveAuth` -- builds the authorization URL and turns the
  provider's redirect (or a bare code) into a credential.
  :class:`AuthorizationCodeFlow` is the generic RFC 6749 / :rfc:`7636`
  implementation.
* :class:`OAuthPrompter` -- the user-facing side: open or show a URL and
  read a pasted redirect.

:func:`run_interactive_login` ties them together. On a local desktop it
opens a browser and catches the redirect on a one-shot loopback HTTP
server. On a remote or headless host (see :func:`is_remote_environment`)
it prints the URL and waits for the user to paste the redirect URL back.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import secrets
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from authprofiles.exceptions import AuthTimeout, InteractiveAuthError
from authprofiles.models import Credential, OAuthCredential, OAuthProviderConfig
from authprofiles.oauth.lifecycle import (
    DEFAULT_REFRESH_TIMEOUT_SECONDS,
    credential_from_token_response,
    resolve_client_id,
    resolve_client_secret,
)
from authprofiles.timeutil import Clock, now_ms

logger = logging.getLogger(__name__)

ENV_FORCE_REMOTE = "AUTHPROFILES_REMOTE"
DEFAULT_LOGIN_TIMEOUT_SECONDS = 300.0
PASTE_PROMPT = "Paste the redirect URL (or authorization code)"


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def is_remote_environment() -> bool:
    """Return ``True`` when a local browser redirect is unlikely to work.

    Detects SSH sessions, GitHub Codespaces and VS Code remote containers,
    and Linux hosts without a graphical display. ``AUTHPROFILES_REMOTE=1``
    forces remote mode; ``AUTHPROFILES_REMOTE=0`` forces local mode.
    """
    forced = os.environ.get(ENV_FORCE_REMOTE)
    if forced is not None and forced.strip():
        return forced.strip().lower() not in ("0", "false", "no")
    if os.environ.get("SSH_CLIENT") or os.environ.get("SSH_TTY") or os.environ.get("SSH_CONNECTION"):
        return True
    if os.environ.get("CODESPACES") or os.environ.get("REMOTE_CONTAINERS"):
        return True
    if sys.platform.startswith("linux"):
        return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))
    return False


class InteractiveAuth(Protocol):
    """Provider-side half of an interactive login."""

    def begin_auth(self, provider: str) -> str:
        """Start a login for *provider* and return the authorization URL."""
        ...

    def complete_auth(self, code_or_redirect_url: str) -> Credential:
        """Finish the login from a pasted code or full redirect URL."""
        ...


class OAuthPrompter(Protocol):
    """User-facing half of an interactive login."""

    def open_url(self, url: str) -> None:
        ...

    def show_url(self, url: str) -> None:
        ...

    def prompt_redirect(self, message: str) -> str:
        ...


def parse_callback_input(raw: str) -> dict[str, str]:
    """Extract ``code``/``state``/``error`` from a redirect URL or bare code.

    Accepts a full URL, a bare query string (``code=...&state=...``) or
    just the code.

    Raises:
        InteractiveAuthError: If the input is empty.
    """
    text = raw.strip()
    if not text:
        raise InteractiveAuthError("No authorization code or redirect URL provided")

    if "://" in text:
        query = urlparse(text).query
    elif "=" in text:
        query = text.lstrip("?")
    else:
        return {"code": text}

    params = parse_qs(query)
    return {key: values[0] for key, values in params.items() if values}


class AuthorizationCodeFlow:
    """Generic OAuth2 Authorization Code flow with PKCE and ``state``.

    Args:
        authorization_url: Provider's authorization endpoint.
        token_url: Provider's token endpoint.
        client_id: OAuth client id.
        client_secret: Optional client secret for confidential clients.
        redirect_uri: Registered redirect URI (loopback for local mode).
        scopes: Requested scopes.
        clock: Epoch-ms clock used to compute ``expires``.
    """

    def __init__(
        self,
        authorization_url: str,
        token_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: str = "http://127.0.0.1:1455/oauth-callback",
        scopes: Optional[list[str]] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.authorization_url = authorization_url
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes or [])
        self._clock = clock
        self._provider: Optional[str] = None
        self._code_verifier: Optional[str] = None
        self._state: Optional[str] = None

    @classmethod
    def from_config(cls, config: OAuthProviderConfig, clock: Clock = now_ms) -> AuthorizationCodeFlow:
        """Build a flow from a provider's settings entry.

        Raises:
            InteractiveAuthError: If ``authorization_url`` is not configured.
        """
        if not config.authorization_url:
            raise InteractiveAuthError("authorization_url is required for interactive login")
        return cls(
            authorization_url=config.authorization_url,
            token_url=config.token_url,
            client_id=resolve_client_id(config),
            client_secret=resolve_client_secret(config),
            redirect_uri=config.redirect_uri,
            scopes=config.scopes,
            clock=clock,
        )

    def begin_auth(self, provider: str) -> str:
        self._provider = provider
        self._code_verifier, code_challenge = generate_pkce_pair()
        self._state = secrets.token_urlsafe(24)

        params: dict[str, str] = {
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": self._state,
        }
        if self.client_id:
            params["client_id"] = self.client_id
        if self.scopes:
            params["scope"] = " ".join(self.scopes)

        separator = "&" if "?" in self.authorization_url else "?"
        return f"{self.authorization_url}{separator}{urlencode(params)}"

    def complete_auth(self, code_or_redirect_url: str) -> OAuthCredential:
        """Validate the callback and exchange the code for tokens.

        Raises:
            InteractiveAuthError: If :meth:`begin_auth` was not called, the
                provider reported an error, ``state`` does not match, or the
                token exchange fails.
        """
        if self._provider is None or self._code_verifier is None:
            raise InteractiveAuthError("begin_auth() must be called before complete_auth()")

        params = parse_callback_input(code_or_redirect_url)
        if "error" in params:
            description = params.get("error_description")
            detail = f"{params['error']} - {description}" if description else params["error"]
            raise InteractiveAuthError(f"OAuth2 authorization failed: {detail}")
        code = params.get("code")
        if not code:
            raise InteractiveAuthError("No authorization code found in the pasted input")
        state = params.get("state")
        if state is not None and state != self._state:
            raise InteractiveAuthError("OAuth state mismatch; restart the login")

        token_data = self._exchange_code(code, self._code_verifier)
        base = OAuthCredential(provider=self._provider, access_token=token_data["access_token"])
        return credential_from_token_response(base, token_data, self._clock())

    def _exchange_code(self, code: str, code_verifier: str) -> dict[str, Any]:
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        }
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            response = httpx.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=DEFAULT_REFRESH_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            token_data: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as exc:
            raise InteractiveAuthError(
                f"Token exchange failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise InteractiveAuthError(f"Token exchange failed: {exc}") from exc

        if "access_token" not in token_data:
            raise InteractiveAuthError("Token response missing 'access_token' field")
        return token_data


def wait_for_callback(redirect_uri: str, timeout_seconds: float) -> str:
    """Serve the redirect URI on loopback until the provider calls back.

    Requests to other paths (favicon probes and the like) are answered
    with 404 and ignored.

    Returns:
        The full callback URL, query string included.

    Raises:
        AuthTimeout: If no callback arrives within *timeout_seconds*.
        OSError: If the redirect port cannot be bound.
    """
    parsed = urlparse(redirect_uri)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or 80
    expected_path = parsed.path or "/"
    result: dict[str, Optional[str]] = {"query": None}

    class CallbackHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            request = urlparse(self.path)
            if request.path != expected_path:
                self.send_response(404)
                self.end_headers()
                return

            params = parse_qs(request.query)
            if "error" in params:
                body = f"Authorization failed: {params['error'][0]}"
            else:
                body = (
                    "Authorization received. You can close this window "
                    "and return to the terminal."
                )
            result["query"] = request.query

            self.send_response(200)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.end_headers()
            self.wfile.write(f"<html><body><h2>{body}</h2></body></html>".encode("utf-8"))

        def log_message(self, format: str, *args: Any) -> None:
            # Suppress default logging
            pass

    server = HTTPServer((host, port), CallbackHandler)
    deadline = time.monotonic() + timeout_seconds
    try:
        while result["query"] is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AuthTimeout(
                    f"No OAuth callback received within {timeout_seconds:g}s"
                )
            server.timeout = min(remaining, 1.0)
            server.handle_request()
    finally:
        server.server_close()

    return f"{redirect_uri}?{result['query']}"


def _call_with_timeout(func: Callable[[], str], timeout_seconds: float) -> str:
    """Run a blocking prompt in a daemon thread and give up after the timeout."""
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = func()
        except Exception as exc:  # re-raised in the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(timeout_seconds)
    if worker.is_alive():
        raise AuthTimeout(f"Interactive login not completed within {timeout_seconds:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def run_interactive_login(
    flow: InteractiveAuth,
    provider: str,
    prompter: OAuthPrompter,
    remote: Optional[bool] = None,
    timeout_seconds: float = DEFAULT_LOGIN_TIMEOUT_SECONDS,
    callback_waiter: Callable[[str, float], str] = wait_for_callback,
) -> Credential:
    """Drive *flow* to completion and return the new credential.

    Nothing is persisted here; the caller upserts the returned credential.

    Args:
        flow: The provider flow.
        provider: Provider id passed to :meth:`InteractiveAuth.begin_auth`.
        prompter: UI used to open/show the URL and read pasted input.
        remote: Force remote (``True``) or local (``False``) mode;
            autodetected when ``None``.
        timeout_seconds: Overall time the user has to finish.
        callback_waiter: Loopback server used in local mode.

    Raises:
        AuthTimeout: If the user does not finish in time.
        InteractiveAuthError: If the provider rejects the login.
    """
    if remote is None:
        remote = is_remote_environment()
    url = flow.begin_auth(provider)

    answer: Optional[str] = None
    redirect_uri = getattr(flow, "redirect_uri", None)
    if not remote and redirect_uri:
        prompter.open_url(url)
        try:
            answer = callback_waiter(redirect_uri, timeout_seconds)
        except OSError as exc:
            logger.warning("Cannot listen on %s (%s); falling back to paste", redirect_uri, exc)

    if answer is None:
        if remote or not redirect_uri:
            prompter.show_url(url)
        answer = _call_with_timeout(lambda: prompter.prompt_redirect(PASTE_PROMPT), timeout_seconds)

    return flow.complete_auth(answer)
