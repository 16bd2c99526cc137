"""Google Workspace MCP tools served to remote agents.

Every tool acts on behalf of the Google account named by ``user_email``.
Credentials come from the CredentialBroker, which refreshes and persists
tokens as needed. An account that has not been linked yet produces a
``not_authorized`` result carrying the login URL.

Tools (22):
- Gmail (10): search, get, drafts, send, labels, mark as read, trash
- Calendar (5): list, create, update, delete events and find free slots
- Drive (7): search, read, create documents and folders, list, upload, move
"""

import asyncio
import base64
import json
import logging
from datetime import date, datetime, timedelta, timezone
from email.mime.text import MIMEText
from typing import Any
from zoneinfo import ZoneInfo

import httpx
from mcp.server import Server
from mcp.types import TextContent, Tool

from gworkspace_remote.auth.broker import CredentialBroker
from gworkspace_remote.config import Settings
from gworkspace_remote.exceptions import (
    UpstreamError,
    UpstreamTimeoutError,
    WorkspaceMCPError,
)

logger = logging.getLogger(__name__)

# Google API base URLs
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
DOCS_API_BASE = "https://docs.googleapis.com/v1"

GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
GOOGLE_SHEET_MIME = "application/vnd.google-apps.spreadsheet"
GOOGLE_SLIDES_MIME = "application/vnd.google-apps.presentation"
GOOGLE_FOLDER_MIME = "application/vnd.google-apps.folder"

EXPORT_FORMATS = {
    GOOGLE_DOC_MIME: "text/plain",
    GOOGLE_SHEET_MIME: "text/csv",
    GOOGLE_SLIDES_MIME: "text/plain",
}

MAX_EMAIL_BODY_CHARS = 10000
MAX_FILE_CONTENT_CHARS = 15000
MAX_EVENT_DESCRIPTION_CHARS = 500

_USER_EMAIL_PROPERTY = {
    "type": "string",
    "description": (
        "Email address of the Google account to act for. "
        "Ask the user for their email if unknown."
    ),
}


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    """Build a tool input schema that always requires ``user_email``."""
    return {
        "type": "object",
        "properties": {"user_email": _USER_EMAIL_PROPERTY, **properties},
        "required": ["user_email", *required],
    }


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required argument: {key}")
    return value


def parse_datetime(value: str, tz: ZoneInfo) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are taken in ``tz``."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def compute_free_slots(
    busy: list[tuple[datetime, datetime]],
    range_start: datetime,
    range_end: datetime,
    duration_minutes: int,
    working_hours_start: int,
    working_hours_end: int,
    tz: ZoneInfo,
) -> list[dict[str, Any]]:
    """Find weekday gaps of at least ``duration_minutes`` inside working hours.

    Args:
        busy: (start, end) pairs of timed events, timezone-aware.
        range_start: Start of the search range.
        range_end: End of the search range.
        duration_minutes: Minimum gap length.
        working_hours_start: First working hour of each day, in ``tz``.
        working_hours_end: Hour the working day ends, in ``tz``.
        tz: Time zone that defines days and working hours.

    Returns:
        Slots as ``{"start", "end", "duration_minutes"}`` dicts in order.
    """
    slots: list[dict[str, Any]] = []

    def add_gap(gap_start: datetime, gap_end: datetime) -> None:
        minutes = (gap_end - gap_start).total_seconds() / 60
        if gap_start < gap_end and minutes >= duration_minutes:
            slots.append(
                {
                    "start": gap_start.isoformat(),
                    "end": gap_end.isoformat(),
                    "duration_minutes": round(minutes),
                }
            )

    current = range_start.astimezone(tz)
    end = range_end.astimezone(tz)
    while current < end:
        day: date = current.date()
        next_day = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
        if day.weekday() >= 5:
            current = next_day
            continue

        day_start = datetime(day.year, day.month, day.day, working_hours_start, tzinfo=tz)
        day_end = datetime(day.year, day.month, day.day, working_hours_end, tzinfo=tz)

        day_events = sorted(
            (event for event in busy if event[0] < day_end and event[1] > day_start),
            key=lambda event: event[0],
        )

        pointer = day_start
        for event_start, event_end in day_events:
            add_gap(max(pointer, day_start), min(event_start, day_end))
            if event_end > pointer:
                pointer = event_end

        add_gap(max(pointer, day_start), day_end)
        current = next_day

    return slots


class GoogleWorkspaceServer:
    """MCP server exposing Gmail, Calendar and Drive tools.

    Attributes:
        server: MCP Server instance.
        broker: CredentialBroker supplying per-user Google credentials.
        settings: Gateway configuration.
    """

    def __init__(self, broker: CredentialBroker, settings: Settings) -> None:
        """Initialize the Google Workspace MCP server."""
        self.server = Server("gworkspace-remote")
        self.broker = broker
        self.settings = settings
        self._http_client: httpx.AsyncClient | None = None
        self._setup_handlers()

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.settings.default_timezone)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client with connection pooling."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                http2=True,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                timeout=httpx.Timeout(self.settings.upstream_timeout_seconds, connect=10.0),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client and release resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def get_tools(self) -> list[Tool]:
        """Return the tool definitions advertised to clients."""
        return [
            # Gmail
            Tool(
                name="gmail_search",
                description=(
                    "Search Gmail messages. Examples: 'is:unread', "
                    "'from:alice newer_than:1d', 'label:inbox subject:invoice'"
                ),
                inputSchema=_schema(
                    {
                        "query": {"type": "string", "description": "Gmail search query"},
                        "max_results": {
                            "type": "integer",
                            "description": "Maximum messages to return (1-50, default: 10)",
                            "default": 10,
                            "minimum": 1,
                            "maximum": 50,
                        },
                    },
                    ["query"],
                ),
            ),
            Tool(
                name="gmail_get",
                description="Get full email content by message ID",
                inputSchema=_schema(
                    {"message_id": {"type": "string", "description": "Gmail message ID"}},
                    ["message_id"],
                ),
            ),
            Tool(
                name="gmail_create_draft",
                description="Create a draft email or reply. Prefer drafts over sending directly.",
                inputSchema=_schema(
                    {
                        "to": {"type": "string", "description": "Recipient email address"},
                        "subject": {"type": "string", "description": "Email subject"},
                        "body": {"type": "string", "description": "Plain text email body"},
                        "thread_id": {"type": "string", "description": "Thread ID for replies"},
                        "in_reply_to": {
                            "type": "string",
                            "description": "Message-ID header for threading",
                        },
                    },
                    ["to", "subject", "body"],
                ),
            ),
            Tool(
                name="gmail_send",
                description=(
                    "Send an email. Only use after the user has explicitly confirmed "
                    "they want to send."
                ),
                inputSchema=_schema(
                    {
                        "to": {"type": "string", "description": "Recipient email address"},
                        "subject": {"type": "string", "description": "Email subject"},
                        "body": {"type": "string", "description": "Plain text email body"},
                        "thread_id": {"type": "string", "description": "Thread ID for replies"},
                        "in_reply_to": {
                            "type": "string",
                            "description": "Message-ID header for threading",
                        },
                        "cc": {"type": "string", "description": "CC recipients (comma-separated)"},
                        "bcc": {
                            "type": "string",
                            "description": "BCC recipients (comma-separated)",
                        },
                    },
                    ["to", "subject", "body"],
                ),
            ),
            Tool(
                name="gmail_add_label",
                description="Add labels to a message. Use gmail_list_labels to find label IDs.",
                inputSchema=_schema(
                    {
                        "message_id": {"type": "string", "description": "Gmail message ID"},
                        "label_ids": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Label IDs to add",
                        },
                    },
                    ["message_id", "label_ids"],
                ),
            ),
            Tool(
                name="gmail_remove_label",
                description="Remove labels from a message",
                inputSchema=_schema(
                    {
                        "message_id": {"type": "string", "description": "Gmail message ID"},
                        "label_ids": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Label IDs to remove",
                        },
                    },
                    ["message_id", "label_ids"],
                ),
            ),
            Tool(
                name="gmail_list_labels",
                description="List all Gmail labels with their IDs",
                inputSchema=_schema({}, []),
            ),
            Tool(
                name="gmail_create_label",
                description="Create a Gmail label, optionally colored (hex codes like #16a765)",
                inputSchema=_schema(
                    {
                        "name": {"type": "string", "description": "Label name"},
                        "background_color": {
                            "type": "string",
                            "description": "Background hex color",
                        },
                        "text_color": {"type": "string", "description": "Text hex color"},
                    },
                    ["name"],
                ),
            ),
            Tool(
                name="gmail_mark_as_read",
                description="Mark a message as read by removing the UNREAD label",
                inputSchema=_schema(
                    {"message_id": {"type": "string", "description": "Gmail message ID"}},
                    ["message_id"],
                ),
            ),
            Tool(
                name="gmail_trash",
                description="Move a message to the trash",
                inputSchema=_schema(
                    {"message_id": {"type": "string", "description": "Gmail message ID"}},
                    ["message_id"],
                ),
            ),
            # Calendar
            Tool(
                name="calendar_get_events",
                description="List events on the primary calendar (default: next 7 days)",
                inputSchema=_schema(
                    {
                        "time_min": {
                            "type": "string",
                            "description": "Start of range (RFC 3339, default: now)",
                        },
                        "time_max": {
                            "type": "string",
                            "description": "End of range (RFC 3339, default: 7 days from now)",
                        },
                        "max_results": {
                            "type": "integer",
                            "description": "Maximum events to return (default: 10)",
                            "default": 10,
                        },
                    },
                    [],
                ),
            ),
            Tool(
                name="calendar_create_event",
                description="Create an event on the primary calendar",
                inputSchema=_schema(
                    {
                        "summary": {"type": "string", "description": "Event title"},
                        "start_time": {
                            "type": "string",
                            "description": "Start time (RFC 3339)",
                        },
                        "end_time": {"type": "string", "description": "End time (RFC 3339)"},
                        "description": {"type": "string", "description": "Event description"},
                        "location": {"type": "string", "description": "Event location"},
                        "attendees": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Attendee email addresses",
                        },
                        "time_zone": {
                            "type": "string",
                            "description": "IANA time zone (default: server setting)",
                        },
                    },
                    ["summary", "start_time", "end_time"],
                ),
            ),
            Tool(
                name="calendar_update_event",
                description="Update fields of an existing event",
                inputSchema=_schema(
                    {
                        "event_id": {"type": "string", "description": "Event ID"},
                        "summary": {"type": "string", "description": "New title"},
                        "start_time": {"type": "string", "description": "New start (RFC 3339)"},
                        "end_time": {"type": "string", "description": "New end (RFC 3339)"},
                        "description": {"type": "string", "description": "New description"},
                        "location": {"type": "string", "description": "New location"},
                        "time_zone": {
                            "type": "string",
                            "description": "IANA time zone (default: server setting)",
                        },
                    },
                    ["event_id"],
                ),
            ),
            Tool(
                name="calendar_delete_event",
                description="Delete an event from the primary calendar",
                inputSchema=_schema(
                    {"event_id": {"type": "string", "description": "Event ID"}},
                    ["event_id"],
                ),
            ),
            Tool(
                name="calendar_find_free_slots",
                description="Find free weekday slots within working hours",
                inputSchema=_schema(
                    {
                        "date_min": {"type": "string", "description": "Range start (RFC 3339)"},
                        "date_max": {"type": "string", "description": "Range end (RFC 3339)"},
                        "duration_minutes": {
                            "type": "integer",
                            "description": "Minimum slot length in minutes (default: 30)",
                            "default": 30,
                        },
                        "working_hours_start": {
                            "type": "integer",
                            "description": "Working day start hour (default: 9)",
                            "default": 9,
                        },
                        "working_hours_end": {
                            "type": "integer",
                            "description": "Working day end hour (default: 17)",
                            "default": 17,
                        },
                    },
                    ["date_min", "date_max"],
                ),
            ),
            # Drive
            Tool(
                name="drive_search",
                description=(
                    "Search Drive files. Accepts Drive query syntax "
                    "(e.g. \"name contains 'report'\") or plain search terms."
                ),
                inputSchema=_schema(
                    {
                        "query": {"type": "string", "description": "Search query"},
                        "max_results": {
                            "type": "integer",
                            "description": "Maximum files to return (default: 10)",
                            "default": 10,
                        },
                    },
                    ["query"],
                ),
            ),
            Tool(
                name="drive_get_file",
                description=(
                    "Read a Drive file. Docs and Slides are exported as text, "
                    "Sheets as CSV; binary files return a link instead."
                ),
                inputSchema=_schema(
                    {"file_id": {"type": "string", "description": "Drive file ID"}},
                    ["file_id"],
                ),
            ),
            Tool(
                name="drive_create_document",
                description="Create a Google Doc with optional initial text",
                inputSchema=_schema(
                    {
                        "title": {"type": "string", "description": "Document title"},
                        "content": {"type": "string", "description": "Initial plain text"},
                        "folder_id": {"type": "string", "description": "Parent folder ID"},
                    },
                    ["title"],
                ),
            ),
            Tool(
                name="drive_list_files",
                description="List files in a folder, or recent files when no folder is given",
                inputSchema=_schema(
                    {
                        "folder_id": {"type": "string", "description": "Folder ID"},
                        "max_results": {
                            "type": "integer",
                            "description": "Maximum files to return (default: 20)",
                            "default": 20,
                        },
                    },
                    [],
                ),
            ),
            Tool(
                name="drive_upload_file",
                description="Upload a text file to Drive",
                inputSchema=_schema(
                    {
                        "name": {"type": "string", "description": "File name"},
                        "content": {"type": "string", "description": "File content"},
                        "mime_type": {
                            "type": "string",
                            "description": "MIME type (default: text/plain)",
                            "default": "text/plain",
                        },
                        "folder_id": {"type": "string", "description": "Parent folder ID"},
                    },
                    ["name", "content"],
                ),
            ),
            Tool(
                name="drive_create_folder",
                description="Create a Drive folder",
                inputSchema=_schema(
                    {
                        "name": {"type": "string", "description": "Folder name"},
                        "parent_folder_id": {
                            "type": "string",
                            "description": "Parent folder ID",
                        },
                    },
                    ["name"],
                ),
            ),
            Tool(
                name="drive_move_file",
                description="Move a file into another folder",
                inputSchema=_schema(
                    {
                        "file_id": {"type": "string", "description": "Drive file ID"},
                        "new_parent_id": {
                            "type": "string",
                            "description": "Destination folder ID",
                        },
                    },
                    ["file_id", "new_parent_id"],
                ),
            ),
        ]

    def _setup_handlers(self) -> None:
        """Register MCP tool handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return list of available tools."""
            return self.get_tools()

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            result = await self.call_tool(name, arguments)
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> Any:
        """Run a tool and convert failures into JSON error objects."""
        try:
            return await self._dispatch_tool(name, arguments or {})
        except WorkspaceMCPError as e:
            logger.warning("Tool %s failed: %s", name, e.message)
            return e.to_dict()
        except Exception as e:
            logger.exception("Error calling tool %s", name)
            return {"error": str(e)}

    # ========================================
    # HTTP helpers
    # ========================================

    async def _get_access_token(self, user_email: str) -> str:
        """Get a valid access token for ``user_email``, refreshing if necessary.

        Raises:
            NotAuthorizedError: If the user has not linked their account.
        """
        client = self.broker.client_for(user_email)
        return await client.access_token()

    async def _send(
        self,
        user_email: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        access_token = await self._get_access_token(user_email)
        client = await self._get_http_client()

        headers = {"Authorization": f"Bearer {access_token}"}
        headers.update(kwargs.pop("headers", None) or {})

        try:
            response = await client.request(method=method, url=url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Google API call {method} {url} timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise UpstreamError(
                f"Google API returned {status} for {method} {url}: {e.response.text[:500]}",
                retryable=status == 429 or status >= 500,
            ) from e
        except httpx.RequestError as e:
            raise UpstreamError(f"Google API call {method} {url} failed: {e}", retryable=True) from e
        return response

    async def _make_request(
        self,
        user_email: str,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to a Google JSON API.

        Returns:
            JSON response as a dictionary (empty for bodiless responses).
        """
        response = await self._send(
            user_email,
            method,
            url,
            params=params,
            json=json_data,
            headers={"Accept": "application/json"},
        )
        if response.status_code == 204 or not response.content:
            return {}
        result: dict[str, Any] = response.json()
        return result

    async def _make_raw_request(
        self,
        user_email: str,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an authenticated request returning the raw response."""
        return await self._send(
            user_email, method, url, params=params, content=content, headers=headers
        )

    async def _dispatch_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Dispatch tool call to appropriate handler.

        Raises:
            ValueError: If the tool name is unknown or ``user_email`` is missing.
        """
        handlers = {
            # Gmail
            "gmail_search": self._gmail_search,
            "gmail_get": self._gmail_get,
            "gmail_create_draft": self._gmail_create_draft,
            "gmail_send": self._gmail_send,
            "gmail_add_label": self._gmail_add_label,
            "gmail_remove_label": self._gmail_remove_label,
            "gmail_list_labels": self._gmail_list_labels,
            "gmail_create_label": self._gmail_create_label,
            "gmail_mark_as_read": self._gmail_mark_as_read,
            "gmail_trash": self._gmail_trash,
            # Calendar
            "calendar_get_events": self._calendar_get_events,
            "calendar_create_event": self._calendar_create_event,
            "calendar_update_event": self._calendar_update_event,
            "calendar_delete_event": self._calendar_delete_event,
            "calendar_find_free_slots": self._calendar_find_free_slots,
            # Drive
            "drive_search": self._drive_search,
            "drive_get_file": self._drive_get_file,
            "drive_create_document": self._drive_create_document,
            "drive_list_files": self._drive_list_files,
            "drive_upload_file": self._drive_upload_file,
            "drive_create_folder": self._drive_create_folder,
            "drive_move_file": self._drive_move_file,
        }

        handler = handlers.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")

        _require(arguments, "user_email")
        return await handler(arguments)

    # ========================================
    # Gmail
    # ========================================

    @staticmethod
    def _header(headers: list[dict[str, str]], name: str) -> str:
        lowered = name.lower()
        for header in headers:
            if header.get("name", "").lower() == lowered:
                return header.get("value", "")
        return ""

    def _extract_message_body(self, payload: dict[str, Any]) -> str:
        """Extract message body from Gmail payload.

        Prefers text/plain, searches nested multipart parts, falls back to HTML.
        """
        if payload.get("body", {}).get("data"):
            return self._decode_body(payload["body"]["data"])

        parts = payload.get("parts", [])
        for part in parts:
            mime_type = part.get("mimeType", "")
            if mime_type == "text/plain" and part.get("body", {}).get("data"):
                return self._decode_body(part["body"]["data"])
            if mime_type.startswith("multipart/"):
                result = self._extract_message_body(part)
                if result:
                    return result

        for part in parts:
            if part.get("mimeType") == "text/html" and part.get("body", {}).get("data"):
                return self._decode_body(part["body"]["data"])

        return ""

    @staticmethod
    def _decode_body(data: str) -> str:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    def _build_email_message(
        self,
        to: str,
        subject: str,
        body: str,
        sender: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
        in_reply_to: str | None = None,
    ) -> str:
        """Build an RFC 2822 message and return it base64url encoded."""
        message = MIMEText(body, "plain", "utf-8")
        if sender:
            message["from"] = sender
        message["to"] = to
        message["subject"] = subject
        if cc:
            message["cc"] = cc
        if bcc:
            message["bcc"] = bcc
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
            message["References"] = in_reply_to

        return base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip("=")

    async def _gmail_search(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Search Gmail messages.

        Message metadata is fetched in parallel with asyncio.gather.
        """
        user_email = arguments["user_email"]
        query = arguments.get("query", "")
        max_results = arguments.get("max_results", 10)

        url = f"{GMAIL_API_BASE}/users/me/messages"
        response = await self._make_request(
            user_email, "GET", url, params={"q": query, "maxResults": max_results}
        )

        message_list = response.get("messages", [])
        if not message_list:
            return {"messages": [], "count": 0}

        async def fetch_message_detail(msg_id: str) -> dict[str, Any]:
            return await self._make_request(
                user_email,
                "GET",
                f"{GMAIL_API_BASE}/users/me/messages/{msg_id}",
                params={
                    "format": "metadata",
                    "metadataHeaders": ["From", "To", "Subject", "Date"],
                },
            )

        details = await asyncio.gather(
            *[fetch_message_detail(msg["id"]) for msg in message_list],
            return_exceptions=True,
        )

        messages = []
        for msg, msg_detail in zip(message_list, details, strict=False):
            if isinstance(msg_detail, BaseException):
                logger.warning("Failed to fetch message %s: %s", msg["id"], msg_detail)
                continue

            headers = msg_detail.get("payload", {}).get("headers", [])
            messages.append(
                {
                    "id": msg["id"],
                    "thread_id": msg.get("threadId"),
                    "from": self._header(headers, "From"),
                    "to": self._header(headers, "To"),
                    "subject": self._header(headers, "Subject"),
                    "date": self._header(headers, "Date"),
                    "snippet": msg_detail.get("snippet"),
                    "label_ids": msg_detail.get("labelIds", []),
                }
            )

        return {"messages": messages, "count": len(messages)}

    async def _gmail_get(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Get full content of a Gmail message, body truncated."""
        user_email = arguments["user_email"]
        message_id = _require(arguments, "message_id")

        url = f"{GMAIL_API_BASE}/users/me/messages/{message_id}"
        response = await self._make_request(user_email, "GET", url, params={"format": "full"})

        payload = response.get("payload", {})
        headers = payload.get("headers", [])
        body = self._extract_message_body(payload)

        return {
            "id": response.get("id"),
            "thread_id": response.get("threadId"),
            "from": self._header(headers, "From"),
            "to": self._header(headers, "To"),
            "cc": self._header(headers, "Cc"),
            "subject": self._header(headers, "Subject"),
            "date": self._header(headers, "Date"),
            "body": body[:MAX_EMAIL_BODY_CHARS],
            "label_ids": response.get("labelIds", []),
            "snippet": response.get("snippet"),
        }

    async def _gmail_create_draft(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Create an email draft, optionally threaded as a reply."""
        user_email = arguments["user_email"]
        raw_message = self._build_email_message(
            to=_require(arguments, "to"),
            subject=arguments.get("subject", ""),
            body=arguments.get("body", ""),
            in_reply_to=arguments.get("in_reply_to"),
        )

        message: dict[str, Any] = {"raw": raw_message}
        if arguments.get("thread_id"):
            message["threadId"] = arguments["thread_id"]

        url = f"{GMAIL_API_BASE}/users/me/drafts"
        response = await self._make_request(user_email, "POST", url, json_data={"message": message})

        return {
            "status": "draft_created",
            "draft_id": response.get("id"),
            "message_id": response.get("message", {}).get("id"),
            "thread_id": response.get("message", {}).get("threadId"),
        }

    async def _gmail_send(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Send an email message."""
        user_email = arguments["user_email"]
        raw_message = self._build_email_message(
            to=_require(arguments, "to"),
            subject=arguments.get("subject", ""),
            body=arguments.get("body", ""),
            sender=user_email,
            cc=arguments.get("cc"),
            bcc=arguments.get("bcc"),
            in_reply_to=arguments.get("in_reply_to"),
        )

        send_body: dict[str, Any] = {"raw": raw_message}
        if arguments.get("thread_id"):
            send_body["threadId"] = arguments["thread_id"]

        url = f"{GMAIL_API_BASE}/users/me/messages/send"
        response = await self._make_request(user_email, "POST", url, json_data=send_body)

        return {
            "status": "sent",
            "message_id": response.get("id"),
            "thread_id": response.get("threadId"),
            "label_ids": response.get("labelIds", []),
        }

    async def _modify_labels(
        self,
        user_email: str,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> None:
        body: dict[str, Any] = {}
        if add:
            body["addLabelIds"] = add
        if remove:
            body["removeLabelIds"] = remove
        url = f"{GMAIL_API_BASE}/users/me/messages/{message_id}/modify"
        await self._make_request(user_email, "POST", url, json_data=body)

    async def _gmail_add_label(self, arguments: dict[str, Any]) -> dict[str, Any]:
        message_id = _require(arguments, "message_id")
        label_ids = list(_require(arguments, "label_ids"))
        await self._modify_labels(arguments["user_email"], message_id, add=label_ids)
        return {"status": "labels_added", "message_id": message_id, "added_labels": label_ids}

    async def _gmail_remove_label(self, arguments: dict[str, Any]) -> dict[str, Any]:
        message_id = _require(arguments, "message_id")
        label_ids = list(_require(arguments, "label_ids"))
        await self._modify_labels(arguments["user_email"], message_id, remove=label_ids)
        return {
            "status": "labels_removed",
            "message_id": message_id,
            "removed_labels": label_ids,
        }

    async def _gmail_list_labels(self, arguments: dict[str, Any]) -> dict[str, Any]:
        url = f"{GMAIL_API_BASE}/users/me/labels"
        response = await self._make_request(arguments["user_email"], "GET", url)

        labels = [
            {"id": label.get("id"), "name": label.get("name"), "type": label.get("type")}
            for label in response.get("labels", [])
        ]
        return {"labels": labels, "count": len(labels)}

    async def _gmail_create_label(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Create a Gmail label shown in the label and message lists."""
        name = _require(arguments, "name")
        background_color = arguments.get("background_color")
        text_color = arguments.get("text_color")

        label_body: dict[str, Any] = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        if background_color or text_color:
            label_body["color"] = {
                "backgroundColor": background_color or "#000000",
                "textColor": text_color or "#ffffff",
            }

        url = f"{GMAIL_API_BASE}/users/me/labels"
        response = await self._make_request(
            arguments["user_email"], "POST", url, json_data=label_body
        )
        return {
            "status": "created",
            "id": response.get("id"),
            "name": response.get("name"),
            "type": response.get("type"),
        }

    async def _gmail_mark_as_read(self, arguments: dict[str, Any]) -> dict[str, Any]:
        message_id = _require(arguments, "message_id")
        await self._modify_labels(arguments["user_email"], message_id, remove=["UNREAD"])
        return {"status": "marked_read", "message_id": message_id}

    async def _gmail_trash(self, arguments: dict[str, Any]) -> dict[str, Any]:
        message_id = _require(arguments, "message_id")
        url = f"{GMAIL_API_BASE}/users/me/messages/{message_id}/trash"
        await self._make_request(arguments["user_email"], "POST", url)
        return {"status": "trashed", "message_id": message_id}

    # ========================================
    # Calendar
    # ========================================

    @staticmethod
    def _event_time(value: dict[str, Any] | None) -> str | None:
        value = value or {}
        return value.get("dateTime") or value.get("date")

    def _event_summary(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": item.get("id"),
            "summary": item.get("summary"),
            "start": self._event_time(item.get("start")),
            "end": self._event_time(item.get("end")),
            "html_link": item.get("htmlLink"),
        }

    async def _calendar_get_events(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Get events from the primary calendar, now to 7 days ahead by default."""
        now = datetime.now(timezone.utc)
        time_min = arguments.get("time_min") or now.isoformat()
        time_max = arguments.get("time_max") or (now + timedelta(days=7)).isoformat()

        url = f"{CALENDAR_API_BASE}/calendars/primary/events"
        params: dict[str, Any] = {
            "timeMin": time_min,
            "timeMax": time_max,
            "maxResults": arguments.get("max_results", 10),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        response = await self._make_request(arguments["user_email"], "GET", url, params=params)

        events = []
        for item in response.get("items", []):
            description = item.get("description")
            events.append(
                {
                    "id": item.get("id"),
                    "summary": item.get("summary"),
                    "description": (
                        description[:MAX_EVENT_DESCRIPTION_CHARS] if description else None
                    ),
                    "start": self._event_time(item.get("start")),
                    "end": self._event_time(item.get("end")),
                    "location": item.get("location"),
                    "attendees": [
                        {"email": a.get("email"), "response_status": a.get("responseStatus")}
                        for a in item.get("attendees", [])
                    ],
                    "html_link": item.get("htmlLink"),
                }
            )

        return {"events": events, "count": len(events)}

    async def _calendar_create_event(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Create an event; attendees are notified when present."""
        time_zone = arguments.get("time_zone") or self.settings.default_timezone
        attendees = arguments.get("attendees") or []

        event: dict[str, Any] = {
            "summary": _require(arguments, "summary"),
            "start": {"dateTime": _require(arguments, "start_time"), "timeZone": time_zone},
            "end": {"dateTime": _require(arguments, "end_time"), "timeZone": time_zone},
        }
        if arguments.get("description"):
            event["description"] = arguments["description"]
        if arguments.get("location"):
            event["location"] = arguments["location"]
        if attendees:
            event["attendees"] = [{"email": email} for email in attendees]

        url = f"{CALENDAR_API_BASE}/calendars/primary/events"
        response = await self._make_request(
            arguments["user_email"],
            "POST",
            url,
            params={"sendUpdates": "all" if attendees else "none"},
            json_data=event,
        )
        return {"status": "created", **self._event_summary(response)}

    async def _calendar_update_event(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Patch only the fields supplied."""
        event_id = _require(arguments, "event_id")
        time_zone = arguments.get("time_zone") or self.settings.default_timezone

        patch: dict[str, Any] = {}
        if arguments.get("summary"):
            patch["summary"] = arguments["summary"]
        if "description" in arguments:
            patch["description"] = arguments["description"]
        if "location" in arguments:
            patch["location"] = arguments["location"]
        if arguments.get("start_time"):
            patch["start"] = {"dateTime": arguments["start_time"], "timeZone": time_zone}
        if arguments.get("end_time"):
            patch["end"] = {"dateTime": arguments["end_time"], "timeZone": time_zone}

        url = f"{CALENDAR_API_BASE}/calendars/primary/events/{event_id}"
        response = await self._make_request(arguments["user_email"], "PATCH", url, json_data=patch)
        return {"status": "updated", **self._event_summary(response)}

    async def _calendar_delete_event(self, arguments: dict[str, Any]) -> dict[str, Any]:
        event_id = _require(arguments, "event_id")
        url = f"{CALENDAR_API_BASE}/calendars/primary/events/{event_id}"
        await self._make_request(arguments["user_email"], "DELETE", url)
        return {"status": "deleted", "event_id": event_id}

    async def _calendar_find_free_slots(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Find free weekday slots between timed events.

        All-day events do not block time.
        """
        date_min = _require(arguments, "date_min")
        date_max = _require(arguments, "date_max")
        duration_minutes = int(arguments.get("duration_minutes", 30))
        working_hours_start = int(arguments.get("working_hours_start", 9))
        working_hours_end = int(arguments.get("working_hours_end", 17))
        tz = self.timezone

        url = f"{CALENDAR_API_BASE}/calendars/primary/events"
        response = await self._make_request(
            arguments["user_email"],
            "GET",
            url,
            params={
                "timeMin": date_min,
                "timeMax": date_max,
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": 250,
            },
        )

        busy = [
            (
                parse_datetime(item["start"]["dateTime"], tz),
                parse_datetime(item["end"]["dateTime"], tz),
            )
            for item in response.get("items", [])
            if item.get("start", {}).get("dateTime") and item.get("end", {}).get("dateTime")
        ]

        slots = compute_free_slots(
            busy,
            parse_datetime(date_min, tz),
            parse_datetime(date_max, tz),
            duration_minutes,
            working_hours_start,
            working_hours_end,
            tz,
        )
        return {
            "free_slots": slots,
            "count": len(slots),
            "search_range": {"from": date_min, "to": date_max},
            "working_hours": f"{working_hours_start}:00 - {working_hours_end}:00",
            "time_zone": self.settings.default_timezone,
            "minimum_duration_minutes": duration_minutes,
        }

    # ========================================
    # Drive
    # ========================================

    def _normalize_drive_query(self, query: str) -> str:
        """Wrap bare search terms in ``fullText contains``."""
        operators = ["contains", "=", "!=", "<", ">", " in ", " has ", " not "]
        if any(op in query.lower() for op in operators):
            return query

        escaped_query = query.replace("'", "\\'")
        return f"fullText contains '{escaped_query}'"

    @staticmethod
    def _file_summary(item: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": item.get("id"),
            "name": item.get("name"),
            "mimeType": item.get("mimeType"),
            "modifiedTime": item.get("modifiedTime"),
            "size": item.get("size"),
            "webViewLink": item.get("webViewLink"),
        }

    async def _drive_search(self, arguments: dict[str, Any]) -> dict[str, Any]:
        query = self._normalize_drive_query(_require(arguments, "query"))
        params = {
            "q": query,
            "pageSize": arguments.get("max_results", 10),
            "fields": "files(id,name,mimeType,modifiedTime,size,webViewLink,parents)",
            "orderBy": "modifiedTime desc",
        }
        response = await self._make_request(
            arguments["user_email"], "GET", f"{DRIVE_API_BASE}/files", params=params
        )

        files = [
            {**self._file_summary(item), "parents": item.get("parents", [])}
            for item in response.get("files", [])
        ]
        return {"files": files, "count": len(files)}

    async def _drive_get_file(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Get file metadata and readable content, truncated."""
        user_email = arguments["user_email"]
        file_id = _require(arguments, "file_id")

        file_url = f"{DRIVE_API_BASE}/files/{file_id}"
        metadata = await self._make_request(
            user_email,
            "GET",
            file_url,
            params={"fields": "id,name,mimeType,modifiedTime,size,webViewLink"},
        )
        mime_type = metadata.get("mimeType", "")

        if mime_type in EXPORT_FORMATS:
            response = await self._make_raw_request(
                user_email,
                "GET",
                f"{file_url}/export",
                params={"mimeType": EXPORT_FORMATS[mime_type]},
            )
            content = response.text
        elif mime_type.startswith("text/") or mime_type == "application/json":
            response = await self._make_raw_request(
                user_email, "GET", file_url, params={"alt": "media"}
            )
            content = response.text
        else:
            content = (
                "[Binary file - cannot display content. "
                f"Download at: {metadata.get('webViewLink')}]"
            )

        return {
            "id": metadata.get("id"),
            "name": metadata.get("name"),
            "mimeType": mime_type,
            "modifiedTime": metadata.get("modifiedTime"),
            "webViewLink": metadata.get("webViewLink"),
            "content": content[:MAX_FILE_CONTENT_CHARS],
        }

    async def _create_drive_item(
        self, user_email: str, name: str, mime_type: str, parent_id: str | None
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": name, "mimeType": mime_type}
        if parent_id:
            metadata["parents"] = [parent_id]
        return await self._make_request(
            user_email,
            "POST",
            f"{DRIVE_API_BASE}/files",
            params={"fields": "id,name,webViewLink"},
            json_data=metadata,
        )

    async def _drive_create_document(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Create a Google Doc, then insert the initial text if any."""
        user_email = arguments["user_email"]
        content = arguments.get("content") or ""

        created = await self._create_drive_item(
            user_email, _require(arguments, "title"), GOOGLE_DOC_MIME, arguments.get("folder_id")
        )
        document_id = created.get("id")

        if content.strip():
            await self._make_request(
                user_email,
                "POST",
                f"{DOCS_API_BASE}/documents/{document_id}:batchUpdate",
                json_data={
                    "requests": [{"insertText": {"location": {"index": 1}, "text": content}}]
                },
            )

        return {
            "status": "created",
            "id": document_id,
            "name": created.get("name"),
            "webViewLink": created.get("webViewLink"),
        }

    async def _drive_list_files(self, arguments: dict[str, Any]) -> dict[str, Any]:
        folder_id = arguments.get("folder_id")
        query = f"'{folder_id}' in parents and trashed = false" if folder_id else "trashed = false"
        params = {
            "q": query,
            "pageSize": arguments.get("max_results", 20),
            "fields": "files(id,name,mimeType,modifiedTime,size,webViewLink,parents)",
            "orderBy": "modifiedTime desc",
        }
        response = await self._make_request(
            arguments["user_email"], "GET", f"{DRIVE_API_BASE}/files", params=params
        )

        files = [self._file_summary(item) for item in response.get("files", [])]
        return {"files": files, "count": len(files)}

    async def _drive_upload_file(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Upload a text file using a multipart upload."""
        name = _require(arguments, "name")
        content = arguments.get("content", "")
        mime_type = arguments.get("mime_type") or "text/plain"
        folder_id = arguments.get("folder_id")

        metadata: dict[str, Any] = {"name": name, "mimeType": mime_type}
        if folder_id:
            metadata["parents"] = [folder_id]

        boundary = "gworkspace_remote_boundary"
        body = "\r\n".join(
            [
                f"--{boundary}",
                "Content-Type: application/json; charset=UTF-8",
                "",
                json.dumps(metadata),
                f"--{boundary}",
                f"Content-Type: {mime_type}",
                "",
                content,
                f"--{boundary}--",
            ]
        )

        response = await self._make_raw_request(
            arguments["user_email"],
            "POST",
            DRIVE_UPLOAD_URL,
            params={"uploadType": "multipart", "fields": "id,name,mimeType,webViewLink"},
            content=body.encode("utf-8"),
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        result = response.json()

        return {
            "status": "uploaded",
            "id": result.get("id"),
            "name": result.get("name"),
            "mimeType": result.get("mimeType"),
            "webViewLink": result.get("webViewLink"),
        }

    async def _drive_create_folder(self, arguments: dict[str, Any]) -> dict[str, Any]:
        created = await self._create_drive_item(
            arguments["user_email"],
            _require(arguments, "name"),
            GOOGLE_FOLDER_MIME,
            arguments.get("parent_folder_id"),
        )
        return {
            "status": "created",
            "id": created.get("id"),
            "name": created.get("name"),
            "webViewLink": created.get("webViewLink"),
        }

    async def _drive_move_file(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Move a file to a new parent, detaching it from all current ones."""
        user_email = arguments["user_email"]
        file_id = _require(arguments, "file_id")
        new_parent_id = _require(arguments, "new_parent_id")

        file_url = f"{DRIVE_API_BASE}/files/{file_id}"
        file_info = await self._make_request(
            user_email, "GET", file_url, params={"fields": "id,name,parents"}
        )
        current_parents = file_info.get("parents", [])

        result = await self._make_request(
            user_email,
            "PATCH",
            file_url,
            params={
                "addParents": new_parent_id,
                "removeParents": ",".join(current_parents),
                "fields": "id,name,parents,webViewLink",
            },
        )

        return {
            "status": "moved",
            "id": result.get("id"),
            "name": result.get("name"),
            "new_parent": new_parent_id,
            "webViewLink": result.get("webViewLink"),
        }
