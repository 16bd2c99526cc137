"""Version information for gworkspace-remote-mcp."""

from importlib.metadata import PackageNotFoundError, version


def _get_version() -> str:
    """Get the installed distribution version or fall back to the source default."""
    try:
        return version("gworkspace-remote-mcp")
    except PackageNotFoundError:
        return "0.1.0"


__version__ = _get_version()
