"""Remote MCP server for Google Workspace.

Provides 22 tools across Gmail, Calendar and Drive:

Gmail Tools (10):
- Search and read messages
- Create drafts and send mail
- List, create, add and remove labels
- Mark as read and trash

Calendar Tools (5):
- List, create, update and delete events
- Find free slots within working hours

Drive Tools (7):
- Search, list and read files
- Create documents and folders
- Upload and move files

Transport: Streamable HTTP under /api/mcp/
Authentication: Bearer tokens from the built-in OAuth gateway or static API keys
"""

from gworkspace_remote.server.app import create_app
from gworkspace_remote.server.google_workspace_server import GoogleWorkspaceServer

__all__ = ["create_app", "GoogleWorkspaceServer"]
