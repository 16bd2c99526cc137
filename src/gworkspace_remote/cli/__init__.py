"""Command-line interface for the Google Workspace MCP gateway."""
