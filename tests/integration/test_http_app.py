"""Integration tests for the HTTP gateway.

Exercises the Starlette application end to end with TestClient: the request
gate, discovery documents, the password-gated authorization flow, the token
endpoint, client registration and the Google account linking pages.
"""

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from starlette.testclient import TestClient

from gworkspace_remote.auth.broker import ExchangeResult
from gworkspace_remote.auth.rate_limit import RateLimiter
from gworkspace_remote.exceptions import UpstreamAuthError
from gworkspace_remote.server.app import create_app

SECRET = "correct horse battery staple"  # pragma: allowlist secret
API_KEY = "static-key-0123456789"  # pragma: allowlist secret
ISSUER = "https://mcp.example.com"


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def obtain_code(client: TestClient, **fields) -> str:
    form = {"redirect_uri": "https://x/cb", "state": "abc", "password": SECRET, **fields}
    response = client.post("/api/oauth/authorize", data=form, follow_redirects=False)
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["code"][0]


# =============================================================================
# Request Gate Tests
# =============================================================================


@pytest.mark.integration
class TestRequestGate:
    """Tests for rate limiting and bearer authentication on /api/."""

    def test_should_challenge_missing_credentials(self, client) -> None:
        """Verify a 401 with a Bearer challenge pointing at resource metadata."""
        response = client.post("/api/mcp/", json={})

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": "Valid Bearer token required."}
        assert response.headers["www-authenticate"] == (
            'Bearer realm="Google Workspace MCP", '
            f'resource_metadata="{ISSUER}/.well-known/oauth-protected-resource"'
        )

    def test_should_reject_invalid_token(self, client) -> None:
        """Verify unknown bearer tokens are refused."""
        response = client.post("/api/mcp/", json={}, headers={"Authorization": "Bearer gws_bad.token"})
        assert response.status_code == 401

    def test_should_rate_limit_per_client_address(self, settings) -> None:
        """Verify the limit applies per forwarded address before authentication."""
        client = TestClient(create_app(settings, rate_limiter=RateLimiter(limit=2, window_seconds=60)))
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}

        statuses = [client.post("/api/mcp/", json={}, headers=headers).status_code for _ in range(3)]
        limited = client.post("/api/mcp/", json={}, headers=headers)
        other = client.post("/api/mcp/", json={}, headers={"X-Forwarded-For": "198.51.100.1"})

        assert statuses == [401, 401, 429]
        assert limited.status_code == 429
        assert limited.headers["retry-after"] == "60"
        assert limited.json() == {"error": "rate_limit_exceeded", "message": "Too many requests."}
        assert other.status_code == 401

    def test_should_not_gate_public_paths(self, settings) -> None:
        """Verify discovery, OAuth and landing pages skip the gate entirely."""
        client = TestClient(create_app(settings, rate_limiter=RateLimiter(limit=1, window_seconds=60)))

        for _ in range(3):
            assert client.get("/").status_code == 200
            assert client.get("/.well-known/oauth-authorization-server").status_code == 200
            assert client.get("/api/oauth/authorize").status_code == 200

    def test_should_gate_paths_that_only_share_the_oauth_prefix(self, client) -> None:
        """Verify the OAuth bypass matches whole path segments."""
        assert client.get("/api/oauthx").status_code == 401

    def test_should_serve_tools_to_api_key_holder(self, app) -> None:
        """Verify an authenticated MCP request reaches the tool listing."""
        with TestClient(app) as client:
            response = client.post(
                "/api/mcp/",
                json={"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}},
                headers={
                    "Authorization": f"Bearer {API_KEY}",
                    "Accept": "application/json, text/event-stream",
                },
            )

        assert response.status_code == 200
        tools = response.json()["result"]["tools"]
        assert len(tools) == 22
        assert "gmail_search" in {tool["name"] for tool in tools}


# =============================================================================
# Discovery Tests
# =============================================================================


@pytest.mark.integration
class TestDiscovery:
    """Tests for the .well-known documents and landing page."""

    def test_should_serve_authorization_server_metadata(self, client) -> None:
        """Verify RFC 8414 metadata uses the public base URL."""
        metadata = client.get("/.well-known/oauth-authorization-server").json()

        assert metadata["issuer"] == ISSUER
        assert metadata["token_endpoint"] == f"{ISSUER}/api/oauth/token"
        assert metadata["code_challenge_methods_supported"] == ["S256"]

    def test_should_serve_protected_resource_metadata(self, client) -> None:
        """Verify RFC 9728 metadata names the MCP resource."""
        metadata = client.get("/.well-known/oauth-protected-resource").json()

        assert metadata["resource"] == f"{ISSUER}/api/mcp"
        assert metadata["authorization_servers"] == [ISSUER]

    def test_should_render_landing_page(self, client) -> None:
        """Verify the index page shows the MCP endpoint and login link."""
        response = client.get("/")

        assert response.status_code == 200
        assert f"{ISSUER}/api/mcp/" in response.text
        assert f"{ISSUER}/auth/login" in response.text


# =============================================================================
# Authorization Flow Tests
# =============================================================================


@pytest.mark.integration
class TestAuthorizeEndpoint:
    """Tests for /api/oauth/authorize."""

    def test_should_render_password_form_with_hidden_fields(self, client) -> None:
        """Verify the request parameters are carried as hidden inputs."""
        response = client.get(
            "/api/oauth/authorize",
            params={"redirect_uri": "https://x/cb", "state": "abc", "code_challenge": "cc1"},
        )

        assert response.status_code == 200
        assert 'name="redirect_uri" value="https://x/cb"' in response.text
        assert 'name="state" value="abc"' in response.text
        assert 'name="code_challenge" value="cc1"' in response.text
        assert 'type="password"' in response.text

    def test_should_escape_reflected_values(self, client) -> None:
        """Verify query values cannot inject markup."""
        response = client.get("/api/oauth/authorize", params={"state": '"><script>x</script>'})
        assert "<script>x</script>" not in response.text

    def test_should_redirect_with_code_on_correct_password(self, client) -> None:
        """Verify a 302 to the client redirect with code and state."""
        response = client.post(
            "/api/oauth/authorize",
            data={"redirect_uri": "https://x/cb", "state": "abc", "password": SECRET},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "x"
        assert location.path == "/cb"
        query = parse_qs(location.query)
        assert query["state"] == ["abc"]
        assert query["code"][0]

    def test_should_accept_raw_urlencoded_body(self, client) -> None:
        """Verify a urlencoded body without a form content type is parsed."""
        body = urlencode({"redirect_uri": "https://x/cb?keep=1", "state": "abc", "password": SECRET})

        response = client.post(
            "/api/oauth/authorize",
            content=body.encode(),
            headers={"Content-Type": "text/plain"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["keep"] == ["1"]
        assert query["state"] == ["abc"]

    def test_should_rerender_form_on_wrong_password(self, client) -> None:
        """Verify a wrong password shows the error and keeps the hidden fields."""
        response = client.post(
            "/api/oauth/authorize",
            data={"redirect_uri": "https://x/cb", "state": "abc", "password": "nope"},
            follow_redirects=False,
        )

        assert response.status_code == 200
        assert "Invalid password. Try again." in response.text
        assert 'name="state" value="abc"' in response.text

    def test_should_reject_invalid_redirect_uri(self, client) -> None:
        """Verify a relative redirect_uri is a 400 invalid_request."""
        response = client.post(
            "/api/oauth/authorize",
            data={"redirect_uri": "/cb", "password": SECRET},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_should_fail_closed_without_secret(self, settings) -> None:
        """Verify no code is issued when the secret is unset."""
        client = TestClient(create_app(settings.model_copy(update={"auth_secret": None})))

        response = client.post(
            "/api/oauth/authorize",
            data={"redirect_uri": "https://x/cb", "password": ""},
            follow_redirects=False,
        )

        assert response.status_code == 200
        assert "Invalid password. Try again." in response.text


@pytest.mark.integration
class TestTokenEndpoint:
    """Tests for /api/oauth/token."""

    def test_should_exchange_code_from_json_body(self, client) -> None:
        """Verify a JSON code exchange returns both tokens and no-store."""
        code = obtain_code(client)

        response = client.post(
            "/api/oauth/token", json={"grant_type": "authorization_code", "code": code}
        )

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 86400
        assert body["access_token"].startswith("gws_")
        assert body["refresh_token"].startswith("gws_")

    def test_should_refresh_from_form_body(self, client) -> None:
        """Verify a form-encoded refresh returns only an access token."""
        tokens = client.post(
            "/api/oauth/token", json={"grant_type": "authorization_code", "code": obtain_code(client)}
        ).json()

        response = client.post(
            "/api/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        )

        assert response.status_code == 200
        assert "refresh_token" not in response.json()

    def test_should_accept_issued_access_token_at_gate(self, client) -> None:
        """Verify the minted access token passes the request gate."""
        tokens = client.post(
            "/api/oauth/token", json={"grant_type": "authorization_code", "code": obtain_code(client)}
        ).json()

        response = client.get(
            "/api/unknown", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )

        assert response.status_code == 404

    def test_should_verify_pkce(self, client) -> None:
        """Verify the code_verifier must match the stored challenge."""
        code = obtain_code(client, code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM")

        bad = client.post(
            "/api/oauth/token",
            json={"grant_type": "authorization_code", "code": code, "code_verifier": "wrong"},
        )
        good = client.post(
            "/api/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
            },
        )

        assert bad.status_code == 400
        assert bad.json()["error"] == "invalid_grant"
        assert good.status_code == 200

    def test_should_reject_bad_code(self, client) -> None:
        """Verify an invalid code is a 400 invalid_grant."""
        response = client.post(
            "/api/oauth/token", json={"grant_type": "authorization_code", "code": "bogus"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_should_reject_unsupported_grant(self, client) -> None:
        """Verify other grant types are refused."""
        response = client.post("/api/oauth/token", json={"grant_type": "password"})

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_should_reject_malformed_json(self, client) -> None:
        """Verify a body that is not a JSON object is an invalid request."""
        for content in (b"{not json", b"[1, 2]"):
            response = client.post(
                "/api/oauth/token", content=content, headers={"Content-Type": "application/json"}
            )
            assert response.status_code == 400
            assert response.json()["error"] == "invalid_request"

    @pytest.mark.parametrize("refresh_token", [123, ["x"], {"token": "x"}])
    def test_should_reject_non_string_refresh_token(self, client, refresh_token) -> None:
        """Verify a refresh_token that is not a string is an invalid request."""
        response = client.post(
            "/api/oauth/token", json={"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_should_reject_non_string_code_fields(self, client) -> None:
        """Verify code and code_verifier must be strings."""
        code = obtain_code(client, code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM")

        bad_verifier = client.post(
            "/api/oauth/token",
            json={"grant_type": "authorization_code", "code": code, "code_verifier": 42},
        )
        bad_code = client.post(
            "/api/oauth/token", json={"grant_type": "authorization_code", "code": 42}
        )

        assert bad_verifier.status_code == 400
        assert bad_verifier.json()["error"] == "invalid_request"
        assert bad_code.status_code == 400
        assert bad_code.json()["error"] == "invalid_request"


@pytest.mark.integration
class TestRegistrationEndpoint:
    """Tests for /api/oauth/register."""

    def test_should_register_client(self, client) -> None:
        """Verify registration returns 201 with generated credentials."""
        response = client.post(
            "/api/oauth/register",
            json={"client_name": "Claude", "redirect_uris": ["https://x/cb"]},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["client_name"] == "Claude"
        assert body["redirect_uris"] == ["https://x/cb"]
        assert body["client_id"]
        assert body["client_secret"]

    def test_should_default_client_name(self, client) -> None:
        """Verify an empty body registers an MCP Client."""
        response = client.post("/api/oauth/register", content=b"")

        assert response.status_code == 201
        assert response.json()["client_name"] == "MCP Client"

    def test_should_reject_invalid_metadata(self, client) -> None:
        """Verify malformed redirect_uris are a 400."""
        response = client.post("/api/oauth/register", json={"redirect_uris": "https://x/cb"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"


# =============================================================================
# Google Account Linking Tests
# =============================================================================


@pytest.mark.integration
class TestGoogleLinking:
    """Tests for /auth/login and /auth/callback."""

    def test_should_redirect_to_google_consent(self, client) -> None:
        """Verify login redirects to Google with offline access."""
        response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://accounts.google.com/")
        assert "access_type=offline" in location

    def test_should_explain_missing_google_config(self, settings) -> None:
        """Verify login is unavailable without a Google client."""
        client = TestClient(create_app(settings.model_copy(update={"google_client_secret": None})))

        response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 503
        assert "GOOGLE_CLIENT_ID" in response.text

    def test_should_require_code_on_callback(self, client) -> None:
        """Verify a callback without code is a plain 400."""
        response = client.get("/auth/callback")

        assert response.status_code == 400
        assert response.text == "Missing code"

    def test_should_show_denial(self, client) -> None:
        """Verify a Google error is shown on the error page."""
        response = client.get("/auth/callback", params={"error": "access_denied"})

        assert response.status_code == 200
        assert "access_denied" in response.text
        assert "/auth/login" in response.text

    def test_should_show_linked_email(self, app, token_record) -> None:
        """Verify a successful exchange names the linked account."""
        app.state.broker.exchange = AsyncMock(
            return_value=ExchangeResult(email="alice@example.com", record=token_record)
        )

        response = TestClient(app).get("/auth/callback", params={"code": "4/abc"})

        assert response.status_code == 200
        assert "alice@example.com" in response.text
        app.state.broker.exchange.assert_awaited_once_with("4/abc")

    def test_should_report_failed_exchange(self, app) -> None:
        """Verify a rejected code renders the error page with a 500."""
        app.state.broker.exchange = AsyncMock(side_effect=UpstreamAuthError("Google said no"))

        response = TestClient(app).get("/auth/callback", params={"code": "4/bad"})

        assert response.status_code == 500
        assert "Google said no" in response.text
