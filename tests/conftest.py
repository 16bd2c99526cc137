"""Shared pytest fixtures for gworkspace-remote-mcp tests.

This module provides reusable fixtures for settings, signed tokens, token
storage and Google credential records.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from gworkspace_remote.auth.authorization import AuthorizationServer
from gworkspace_remote.auth.models import WorkspaceTokenRecord
from gworkspace_remote.auth.signed_tokens import BEARER_TOKEN_PREFIX, SignedTokenCodec
from gworkspace_remote.auth.token_storage import TokenStorage
from gworkspace_remote.config import Settings, reset_settings

TEST_SECRET = "correct horse battery staple"  # pragma: allowlist secret
TEST_API_KEY = "static-key-0123456789"  # pragma: allowlist secret
TEST_ISSUER = "https://mcp.example.com"


class FakeClock:
    """Controllable clock returning seconds since the epoch."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_settings_singleton():
    """Never leak the cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    """Token store location inside a temporary directory."""
    return tmp_path / ".gworkspace-remote" / "tokens.json"


@pytest.fixture
def settings(token_path: Path) -> Settings:
    """Fully configured settings that ignore the environment's .env file."""
    return Settings(
        _env_file=None,
        public_base_url=TEST_ISSUER,
        auth_secret=TEST_SECRET,
        mcp_api_keys=f"{TEST_API_KEY}, ,other-key",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="google-client-secret",  # pragma: allowlist secret
        token_store_path=token_path,
        default_timezone="Europe/Berlin",
    )


# =============================================================================
# Signing Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> SignedTokenCodec:
    """Bearer token codec bound to the fake clock."""
    return SignedTokenCodec(TEST_SECRET, prefix=BEARER_TOKEN_PREFIX, clock=clock)


@pytest.fixture
def auth_server(settings: Settings, clock: FakeClock) -> AuthorizationServer:
    """Authorization server built from the test settings."""
    return AuthorizationServer.from_settings(settings, clock=clock)


# =============================================================================
# Token Storage Fixtures
# =============================================================================


@pytest.fixture
def token_storage(token_path: Path) -> TokenStorage:
    """Token storage writing into a temporary directory."""
    return TokenStorage(token_path)


@pytest.fixture
def token_record() -> WorkspaceTokenRecord:
    """A stored Google credential that is still valid for an hour."""
    return WorkspaceTokenRecord(
        user_email="alice@example.com",
        access_token="ya29.access-token",
        refresh_token="1//refresh-token",
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        scopes="https://mail.google.com/ https://www.googleapis.com/auth/drive",
    )


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()
