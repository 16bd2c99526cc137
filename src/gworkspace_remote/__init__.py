"""Remote Google Workspace MCP server.

Exposes Gmail, Calendar and Drive tools over MCP streamable HTTP, protected
by a self-contained OAuth authorization-code flow and stateless signed
bearer tokens.
"""

from gworkspace_remote.__version__ import __version__

__all__ = ["__version__"]
