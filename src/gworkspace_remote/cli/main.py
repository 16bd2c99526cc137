"""Command-line interface for gworkspace-remote-mcp."""

import logging
import sys

import click

from gworkspace_remote.__version__ import __version__


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Google Workspace MCP gateway - remote Gmail, Calendar and Drive tools for agents.

    Agents connect over streamable HTTP with a bearer token obtained from the
    built-in OAuth flow (or a static API key). Users link their Google
    accounts once through the /auth/login page.
    """
    pass


@main.command()
@click.option("--host", default=None, help="Bind address (default: HOST setting)")
@click.option("--port", type=int, default=None, help="Port (default: PORT setting)")
@click.option("--log-level", default=None, help="Log level (default: LOG_LEVEL setting)")
def serve(host: str | None, port: int | None, log_level: str | None) -> None:
    """Start the HTTP gateway.

    Serves the OAuth endpoints, the Google account linking pages and the MCP
    endpoint at /api/mcp/.
    """
    import uvicorn

    from gworkspace_remote.config import get_settings
    from gworkspace_remote.server.app import create_app

    settings = get_settings()
    level = log_level or settings.log_level
    _configure_logging(level)

    if not settings.auth_secret and not settings.get_api_keys_list():
        click.echo("❌ Neither AUTH_SECRET nor MCP_API_KEYS is set; no client could authenticate.")
        sys.exit(1)

    app = create_app(settings)
    click.echo(f"Starting Google Workspace MCP gateway on {host or settings.host}:{port or settings.port}", err=True)
    click.echo(f"MCP endpoint: {settings.public_base_url}/api/mcp/", err=True)
    uvicorn.run(app, host=host or settings.host, port=port or settings.port, log_level=level.lower())


@main.command()
def doctor() -> None:
    """Check configuration and stored Google accounts."""
    from gworkspace_remote.auth.signed_tokens import mask_secret
    from gworkspace_remote.auth.token_storage import TokenStorage
    from gworkspace_remote.config import get_settings
    from gworkspace_remote.exceptions import TokenStoreError

    settings = get_settings()
    problems = 0

    click.echo("Google Workspace MCP Gateway Status:")
    click.echo("")

    click.echo("Configuration:")
    for key, value in settings.to_dict().items():
        click.echo(f"  {key}: {value}")
    for key in settings.get_api_keys_list():
        click.echo(f"  api key: {mask_secret(key)}")
    click.echo("")

    if settings.auth_secret:
        click.echo("  ✓ AUTH_SECRET configured")
    else:
        click.echo("  ❌ AUTH_SECRET missing (OAuth token issuance disabled)")
        problems += 1

    if settings.has_google_config():
        click.echo("  ✓ Google OAuth client configured")
        click.echo(f"    Redirect URI: {settings.google_redirect_uri}")
    else:
        click.echo("  ❌ GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET missing")
        problems += 1

    click.echo("")
    click.echo("Linked accounts:")
    storage = TokenStorage(settings.token_store_path)
    try:
        emails = storage.list_emails()
    except TokenStoreError as e:
        click.echo(f"  ❌ {e.message}")
        sys.exit(1)

    if not emails:
        click.echo("  (none) - users connect at " f"{settings.public_base_url}/auth/login")
    for email in emails:
        click.echo(f"  {email}: {storage.get_status(email).value}")

    if problems:
        sys.exit(1)


@main.command()
def accounts() -> None:
    """List Google accounts with stored tokens."""
    from gworkspace_remote.auth.token_storage import TokenStorage
    from gworkspace_remote.config import get_settings

    storage = TokenStorage(get_settings().token_store_path)
    emails = storage.list_emails()
    if not emails:
        click.echo("No linked accounts.")
        return
    for email in emails:
        click.echo(email)


@main.command()
@click.argument("email")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def forget(email: str, yes: bool) -> None:
    """Delete stored Google tokens for EMAIL."""
    from gworkspace_remote.auth.broker import CredentialBroker
    from gworkspace_remote.auth.token_storage import TokenStorage
    from gworkspace_remote.config import get_settings

    if not yes and not click.confirm(f"Delete stored tokens for {email}?"):
        return

    settings = get_settings()
    broker = CredentialBroker(settings, TokenStorage(settings.token_store_path))
    if broker.forget(email):
        click.echo(f"✓ Removed tokens for {email}")
    else:
        click.echo(f"No tokens stored for {email}")
        sys.exit(1)


@main.command("issue-token")
@click.option(
    "--kind",
    type=click.Choice(["access", "refresh"]),
    default="access",
    show_default=True,
    help="Token class to issue",
)
@click.option("--ttl", type=int, default=None, help="Lifetime in seconds (default: configured TTL)")
def issue_token(kind: str, ttl: int | None) -> None:
    """Print a signed bearer token for manual client setup."""
    from gworkspace_remote.auth.authorization import AuthorizationServer
    from gworkspace_remote.config import get_settings

    settings = get_settings()
    if not settings.auth_secret:
        click.echo("❌ AUTH_SECRET is not set; cannot sign tokens.", err=True)
        sys.exit(1)

    auth_server = AuthorizationServer.from_settings(settings)
    if ttl is None:
        ttl = auth_server.access_token_ttl if kind == "access" else auth_server.refresh_token_ttl
    click.echo(auth_server.token_codec.issue({"typ": kind}, ttl))


if __name__ == "__main__":
    main()
