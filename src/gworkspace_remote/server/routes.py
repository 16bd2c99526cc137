"""HTTP endpoints for the OAuth gateway and the human-facing pages.

Implements:
- Authorization Server Metadata (RFC 8414)
- Protected Resource Metadata (RFC 9728)
- Dynamic Client Registration (RFC 7591)
- Password-gated authorization endpoint rendered with Jinja2 templates
- Token endpoint (JSON or form-encoded)
- Google account linking: login redirect and callback pages

Handlers read the shared components from ``request.app.state``.
"""

import json
import logging
import secrets
from typing import Any
from urllib.parse import parse_qsl

from jinja2 import Environment, PackageLoader, select_autoescape
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from gworkspace_remote.auth.authorization import (
    AUTHORIZE_PATH,
    MCP_PATH,
    AuthorizationRequest,
    AuthorizationServer,
    CodeIssued,
    OAuthError,
)
from gworkspace_remote.auth.broker import CredentialBroker
from gworkspace_remote.exceptions import WorkspaceMCPError

logger = logging.getLogger(__name__)

jinja_env = Environment(
    loader=PackageLoader("gworkspace_remote", "templates"),
    autoescape=select_autoescape(["html"]),
)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def render_template(template_name: str, context: dict[str, Any], status_code: int = 200) -> HTMLResponse:
    """Render Jinja2 template."""
    template = jinja_env.get_template(template_name)
    return HTMLResponse(content=template.render(**context), status_code=status_code)


def _auth_server(request: Request) -> AuthorizationServer:
    return request.app.state.auth_server


def _broker(request: Request) -> CredentialBroker:
    return request.app.state.broker


def _oauth_error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code)


async def _read_form_or_query_body(request: Request) -> dict[str, str]:
    """Read a form body, falling back to parsing the raw body as a query string."""
    content_type = request.headers.get("content-type", "")
    if any(ct in content_type for ct in FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = (await request.body()).decode("utf-8", errors="replace")
    return dict(parse_qsl(raw, keep_blank_values=True))


def _render_authorize(auth_request: AuthorizationRequest, error: str | None = None) -> HTMLResponse:
    return render_template(
        "authorize.html",
        {
            "action": AUTHORIZE_PATH,
            "redirect_uri": auth_request.redirect_uri,
            "state": auth_request.state,
            "code_challenge": auth_request.code_challenge,
            "error": error,
        },
    )


# ========================================
# Discovery
# ========================================


async def authorization_server_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return JSONResponse(_auth_server(request).get_authorization_server_metadata())


async def protected_resource_metadata(request: Request) -> JSONResponse:
    """Protected Resource Metadata (RFC 9728)."""
    return JSONResponse(_auth_server(request).get_protected_resource_metadata())


# ========================================
# OAuth endpoints
# ========================================


async def authorize_get(request: Request) -> HTMLResponse:
    """Authorization endpoint (GET) - shows the password prompt."""
    return _render_authorize(AuthorizationRequest.from_mapping(request.query_params))


async def authorize_post(request: Request) -> Response:
    """Authorization endpoint (POST) - checks the password and redirects with a code."""
    params = await _read_form_or_query_body(request)
    auth_request = AuthorizationRequest.from_mapping(params)

    try:
        outcome = _auth_server(request).authorize(auth_request, params.get("password"))
    except OAuthError as e:
        return _oauth_error_response(e)
    except WorkspaceMCPError as e:
        logger.error("Cannot issue authorization code: %s", e.message)
        return JSONResponse(e.to_dict(), status_code=500)

    if isinstance(outcome, CodeIssued):
        return RedirectResponse(url=outcome.redirect_url, status_code=302)
    return _render_authorize(outcome.request, error=outcome.error)


async def token_endpoint(request: Request) -> JSONResponse:
    """Token endpoint - exchanges codes and refresh tokens for access tokens."""
    content_type = request.headers.get("content-type", "")
    if any(ct in content_type for ct in FORM_CONTENT_TYPES):
        form = await request.form()
        params: Any = {key: value for key, value in form.items() if isinstance(value, str)}
    else:
        try:
            params = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            params = None
        if not isinstance(params, dict):
            return JSONResponse(
                {"error": "invalid_request", "error_description": "Body must be a JSON object"},
                status_code=400,
            )

    try:
        token_response = _auth_server(request).handle_token_request(params)
    except OAuthError as e:
        logger.info("Token request rejected: %s", e.error)
        return _oauth_error_response(e)
    except WorkspaceMCPError as e:
        logger.error("Cannot issue tokens: %s", e.message)
        return JSONResponse(e.to_dict(), status_code=500)

    return JSONResponse(
        token_response.model_dump(exclude_none=True),
        headers={"Cache-Control": "no-store"},
    )


async def register_client(request: Request) -> JSONResponse:
    """Dynamic Client Registration (RFC 7591)."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    body = {key: value for key, value in body.items() if value is not None}

    try:
        registration = _auth_server(request).register_client(body)
    except ValidationError as e:
        return JSONResponse(
            {"error": "invalid_client_metadata", "error_description": str(e)},
            status_code=400,
        )

    return JSONResponse(registration.model_dump(), status_code=201)


# ========================================
# Google account linking
# ========================================


async def google_login(request: Request) -> Response:
    """Redirect the user to Google's consent screen."""
    broker = _broker(request)
    if not broker.settings.has_google_config():
        return render_template(
            "callback_error.html",
            {
                "title": "Google sign-in unavailable",
                "message": "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are not configured.",
                "login_url": broker.login_url,
            },
            status_code=503,
        )

    state = request.query_params.get("state") or secrets.token_urlsafe(16)
    return RedirectResponse(url=broker.auth_url(state), status_code=302)


async def google_callback(request: Request) -> Response:
    """Finish Google account linking and show the result."""
    broker = _broker(request)
    error = request.query_params.get("error")
    code = request.query_params.get("code")

    if error:
        return render_template(
            "callback_error.html",
            {"title": "Authorization denied", "message": error, "login_url": broker.login_url},
        )

    if not code:
        return Response("Missing code", status_code=400, media_type="text/plain")

    try:
        result = await broker.exchange(code)
    except WorkspaceMCPError as e:
        logger.error("Google account linking failed: %s", e.message)
        return render_template(
            "callback_error.html",
            {"title": "Error", "message": e.message, "login_url": broker.login_url},
            status_code=500,
        )

    return render_template("callback_success.html", {"email": result.email})


async def index(request: Request) -> HTMLResponse:
    """Landing page."""
    issuer = _auth_server(request).issuer
    return render_template(
        "index.html",
        {
            "mcp_url": f"{issuer}{MCP_PATH}/",
            "metadata_url": f"{issuer}/.well-known/oauth-authorization-server",
            "login_url": _broker(request).login_url,
        },
    )
