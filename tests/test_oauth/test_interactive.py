"""Tests for authprofiles.oauth.interactive -- PKCE login and remote paste mode."""

from __future__ import annotations

import base64
import hashlib
import socket
import threading
import time
from typing import Optional
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authprofiles.exceptions import AuthTimeout, InteractiveAuthError
from authprofiles.models import OAuthCredential, OAuthProviderConfig
from authprofiles.oauth.interactive import (
    PASTE_PROMPT,
    AuthorizationCodeFlow,
    generate_pkce_pair,
    is_remote_environment,
    parse_callback_input,
    run_interactive_login,
    wait_for_callback,
)
from authprofiles.timeutil import MS_PER_SECOND

from conftest import NOW, FakeClock

REDIRECT = "http://127.0.0.1:1455/oauth-callback"


def _flow(**kwargs) -> AuthorizationCodeFlow:
    defaults = dict(
        authorization_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        client_id="cid",
        redirect_uri=REDIRECT,
        scopes=["openid", "offline_access"],
        clock=FakeClock(),
    )
    defaults.update(kwargs)
    return AuthorizationCodeFlow(**defaults)


def _token_response(**extra) -> httpx.Response:
    body = {"access_token": "at", "refresh_token": "rt", "expires_in": 600}
    body.update(extra)
    return httpx.Response(200, json=body, request=httpx.Request("POST", "https://auth.example.com/token"))


class FakePrompter:
    def __init__(self, answer: str = "", delay: float = 0.0) -> None:
        self.answer = answer
        self.delay = delay
        self.opened: list[str] = []
        self.shown: list[str] = []
        self.prompts: list[str] = []

    def open_url(self, url: str) -> None:
        self.opened.append(url)

    def show_url(self, url: str) -> None:
        self.shown.append(url)

    def prompt_redirect(self, message: str) -> str:
        self.prompts.append(message)
        if self.delay:
            time.sleep(self.delay)
        return self.answer


# ---------------------------------------------------------------------------
# PKCE and callback parsing
# ---------------------------------------------------------------------------


class TestPKCE:
    def test_challenge_is_s256_of_verifier(self) -> None:
        verifier, challenge = generate_pkce_pair()
        assert 43 <= len(verifier) <= 128
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def test_pairs_are_unique(self) -> None:
        assert generate_pkce_pair()[0] != generate_pkce_pair()[0]


class TestParseCallbackInput:
    def test_full_url(self) -> None:
        assert parse_callback_input(f"{REDIRECT}?code=abc&state=xyz") == {"code": "abc", "state": "xyz"}

    def test_query_string(self) -> None:
        assert parse_callback_input("?code=abc&state=xyz") == {"code": "abc", "state": "xyz"}

    def test_bare_code(self) -> None:
        assert parse_callback_input("  abc123 \n") == {"code": "abc123"}

    def test_empty_rejected(self) -> None:
        with pytest.raises(InteractiveAuthError):
            parse_callback_input("   ")


# ---------------------------------------------------------------------------
# AuthorizationCodeFlow
# ---------------------------------------------------------------------------


class TestAuthorizationCodeFlow:
    def test_begin_auth_url(self) -> None:
        flow = _flow()
        url = flow.begin_auth("openai-codex")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.netloc == "auth.example.com"
        assert params["response_type"] == "code"
        assert params["client_id"] == "cid"
        assert params["redirect_uri"] == REDIRECT
        assert params["code_challenge_method"] == "S256"
        assert params["scope"] == "openid offline_access"
        assert params["state"]

    def test_complete_with_redirect_url(self) -> None:
        flow = _flow()
        url = flow.begin_auth("openai-codex")
        state = parse_qs(urlparse(url).query)["state"][0]
        with patch("authprofiles.oauth.interactive.httpx.post", return_value=_token_response()) as post:
            credential = flow.complete_auth(f"{REDIRECT}?code=the-code&state={state}")

        assert isinstance(credential, OAuthCredential)
        assert credential.provider == "openai-codex"
        assert credential.access_token == "at"
        assert credential.refresh_token == "rt"
        assert credential.expires == NOW + 600 * MS_PER_SECOND
        data = post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "the-code"
        assert data["code_verifier"]

    def test_bare_code_skips_state_check(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        with patch("authprofiles.oauth.interactive.httpx.post", return_value=_token_response()):
            assert flow.complete_auth("the-code").access_token == "at"

    def test_state_mismatch(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        with patch("authprofiles.oauth.interactive.httpx.post") as post:
            with pytest.raises(InteractiveAuthError, match="state mismatch"):
                flow.complete_auth(f"{REDIRECT}?code=c&state=forged")
        post.assert_not_called()

    def test_provider_error(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        with pytest.raises(InteractiveAuthError, match="access_denied - user said no"):
            flow.complete_auth(f"{REDIRECT}?error=access_denied&error_description=user+said+no")

    def test_missing_code(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        with pytest.raises(InteractiveAuthError, match="No authorization code"):
            flow.complete_auth(f"{REDIRECT}?foo=bar")

    def test_complete_before_begin(self) -> None:
        with pytest.raises(InteractiveAuthError, match="begin_auth"):
            _flow().complete_auth("code")

    def test_exchange_http_error(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        request = httpx.Request("POST", "https://auth.example.com/token")
        response = httpx.Response(400, json={"error": "invalid_grant"}, request=request)
        with patch("authprofiles.oauth.interactive.httpx.post", return_value=response):
            with pytest.raises(InteractiveAuthError, match="status 400"):
                flow.complete_auth("code")

    def test_exchange_transport_error(self) -> None:
        flow = _flow()
        flow.begin_auth("openai-codex")
        with patch(
            "authprofiles.oauth.interactive.httpx.post", side_effect=httpx.ConnectError("refused")
        ):
            with pytest.raises(InteractiveAuthError, match="refused"):
                flow.complete_auth("code")

    def test_from_config_requires_authorization_url(self) -> None:
        with pytest.raises(InteractiveAuthError):
            AuthorizationCodeFlow.from_config(OAuthProviderConfig(token_url="t"))

    def test_from_config(self) -> None:
        config = OAuthProviderConfig(
            token_url="https://t", authorization_url="https://a", client_id="cid", scopes=["x"]
        )
        flow = AuthorizationCodeFlow.from_config(config)
        assert flow.client_id == "cid"
        assert flow.redirect_uri == config.redirect_uri
        assert flow.scopes == ["x"]


# ---------------------------------------------------------------------------
# Remote detection
# ---------------------------------------------------------------------------


class TestIsRemoteEnvironment:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in (
            "AUTHPROFILES_REMOTE",
            "SSH_CLIENT",
            "SSH_TTY",
            "SSH_CONNECTION",
            "CODESPACES",
            "REMOTE_CONTAINERS",
            "DISPLAY",
            "WAYLAND_DISPLAY",
        ):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setattr("authprofiles.oauth.interactive.sys.platform", "darwin")

    def test_local_by_default(self) -> None:
        assert is_remote_environment() is False

    @pytest.mark.parametrize("var", ["SSH_CLIENT", "SSH_TTY", "SSH_CONNECTION", "CODESPACES", "REMOTE_CONTAINERS"])
    def test_remote_markers(self, monkeypatch: pytest.MonkeyPatch, var: str) -> None:
        monkeypatch.setenv(var, "1")
        assert is_remote_environment() is True

    def test_headless_linux(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("authprofiles.oauth.interactive.sys.platform", "linux")
        assert is_remote_environment() is True
        monkeypatch.setenv("WAYLAND_DISPLAY", "wayland-0")
        assert is_remote_environment() is False

    def test_force_flag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTHPROFILES_REMOTE", "1")
        assert is_remote_environment() is True
        monkeypatch.setenv("SSH_TTY", "/dev/pts/0")
        monkeypatch.setenv("AUTHPROFILES_REMOTE", "0")
        assert is_remote_environment() is False


# ---------------------------------------------------------------------------
# run_interactive_login
# ---------------------------------------------------------------------------


class StubFlow:
    """Flow that records what it was given."""

    def __init__(self, redirect_uri: Optional[str] = REDIRECT) -> None:
        self.redirect_uri = redirect_uri
        self.completed_with: Optional[str] = None

    def begin_auth(self, provider: str) -> str:
        return f"https://auth.example.com/authorize?provider={provider}"

    def complete_auth(self, code_or_redirect_url: str) -> OAuthCredential:
        self.completed_with = code_or_redirect_url
        return OAuthCredential(provider="openai-codex", access_token="at", expires=NOW + 1)


class TestRunInteractiveLogin:
    def test_remote_mode_shows_url_and_reads_paste(self) -> None:
        flow = StubFlow()
        prompter = FakePrompter(answer=f"{REDIRECT}?code=c&state=s")
        credential = run_interactive_login(flow, "openai-codex", prompter, remote=True)
        assert credential.access_token == "at"
        assert prompter.shown == ["https://auth.example.com/authorize?provider=openai-codex"]
        assert prompter.opened == []
        assert prompter.prompts == [PASTE_PROMPT]
        assert flow.completed_with == f"{REDIRECT}?code=c&state=s"

    def test_local_mode_uses_loopback(self) -> None:
        flow = StubFlow()
        prompter = FakePrompter()
        seen: list[tuple[str, float]] = []

        def waiter(redirect_uri: str, timeout: float) -> str:
            seen.append((redirect_uri, timeout))
            return f"{redirect_uri}?code=loop"

        run_interactive_login(flow, "openai-codex", prompter, remote=False, timeout_seconds=9, callback_waiter=waiter)
        assert prompter.opened
        assert prompter.prompts == []
        assert seen == [(REDIRECT, 9)]
        assert flow.completed_with == f"{REDIRECT}?code=loop"

    def test_local_bind_failure_falls_back_to_paste(self) -> None:
        flow = StubFlow()
        prompter = FakePrompter(answer="pasted-code")

        def waiter(redirect_uri: str, timeout: float) -> str:
            raise OSError("address in use")

        run_interactive_login(flow, "openai-codex", prompter, remote=False, callback_waiter=waiter)
        assert prompter.prompts == [PASTE_PROMPT]
        assert flow.completed_with == "pasted-code"

    def test_paste_timeout(self) -> None:
        flow = StubFlow()
        prompter = FakePrompter(answer="late", delay=2.0)
        with pytest.raises(AuthTimeout):
            run_interactive_login(flow, "openai-codex", prompter, remote=True, timeout_seconds=0.1)
        assert flow.completed_with is None

    def test_loopback_timeout_propagates(self) -> None:
        flow = StubFlow()

        def waiter(redirect_uri: str, timeout: float) -> str:
            raise AuthTimeout("no callback")

        with pytest.raises(AuthTimeout):
            run_interactive_login(flow, "openai-codex", FakePrompter(), remote=False, callback_waiter=waiter)
        assert flow.completed_with is None

    def test_prompt_error_is_reraised(self) -> None:
        class Exploding(FakePrompter):
            def prompt_redirect(self, message: str) -> str:
                raise InteractiveAuthError("aborted")

        with pytest.raises(InteractiveAuthError, match="aborted"):
            run_interactive_login(StubFlow(), "openai-codex", Exploding(), remote=True)


# ---------------------------------------------------------------------------
# Loopback server
# ---------------------------------------------------------------------------


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWaitForCallback:
    def test_returns_callback_url(self) -> None:
        redirect = f"http://127.0.0.1:{_free_port()}/oauth-callback"
        result: dict[str, str] = {}

        def serve() -> None:
            result["url"] = wait_for_callback(redirect, timeout_seconds=10)

        server = threading.Thread(target=serve, daemon=True)
        server.start()

        deadline = time.monotonic() + 5
        while True:
            try:
                favicon = httpx.get(redirect.replace("/oauth-callback", "/favicon.ico"), timeout=1)
                break
            except httpx.TransportError:
                if time.monotonic() > deadline:
                    raise
                time.sleep(0.05)
        assert favicon.status_code == 404

        response = httpx.get(f"{redirect}?code=abc&state=xyz", timeout=5)
        server.join(5)
        assert response.status_code == 200
        assert result["url"] == f"{redirect}?code=abc&state=xyz"

    def test_times_out(self) -> None:
        redirect = f"http://127.0.0.1:{_free_port()}/cb"
        with pytest.raises(AuthTimeout):
            wait_for_callback(redirect, timeout_seconds=0.2)
