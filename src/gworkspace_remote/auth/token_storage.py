"""JSON-file storage for per-user Google tokens.

Storage Location: ``TOKEN_STORE_PATH`` (default ``./.gworkspace-remote/tokens.json``)

Records are keyed by the user's email address. The directory is created with
mode 0700 and the file is rewritten with mode 0600. Tokens are stored without
encryption; protect the host filesystem accordingly.
"""

import json
import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from gworkspace_remote.auth.models import TokenStatus, WorkspaceTokenRecord
from gworkspace_remote.exceptions import TokenStoreError

logger = logging.getLogger(__name__)


class TokenStorage:
    """Simple JSON-based storage for Workspace token records.

    Attributes:
        token_path: Path to the tokens.json file.

    Example:
        ```python
        storage = TokenStorage(Path(".gworkspace-remote/tokens.json"))
        storage.upsert(WorkspaceTokenRecord(user_email="a@b.c", refresh_token="1//x"))
        record = storage.get("a@b.c")
        ```
    """

    def __init__(self, token_path: Path) -> None:
        self.token_path = Path(token_path)
        self._lock = threading.Lock()

    def _ensure_credentials_dir(self) -> None:
        """Create credentials directory with secure permissions if needed."""
        creds_dir = self.token_path.parent
        if not creds_dir.exists():
            creds_dir.mkdir(parents=True, mode=0o700)
        else:
            creds_dir.chmod(0o700)

    def _load_records(self) -> dict[str, dict]:
        """Load all records from the JSON file.

        Raises:
            TokenStoreError: If the file exists but cannot be read or parsed.
        """
        if not self.token_path.exists():
            return {}

        try:
            with open(self.token_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TokenStoreError(f"Cannot read token store {self.token_path}: {e}") from e

        if not isinstance(data, dict):
            raise TokenStoreError(f"Token store {self.token_path} is not a JSON object")
        return data

    def _save_records(self, records: dict[str, dict]) -> None:
        try:
            self._ensure_credentials_dir()
            with open(self.token_path, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, default=str)
            self.token_path.chmod(0o600)
        except OSError as e:
            raise TokenStoreError(f"Cannot write token store {self.token_path}: {e}") from e

    @staticmethod
    def _key(user_email: str) -> str:
        return user_email.strip().lower()

    def get(self, user_email: str) -> WorkspaceTokenRecord | None:
        """Return the record for ``user_email`` or ``None``.

        A record that no longer validates is treated as absent.
        """
        with self._lock:
            raw = self._load_records().get(self._key(user_email))

        if raw is None:
            return None
        try:
            return WorkspaceTokenRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Stored token record for %s is invalid", user_email)
            return None

    def upsert(self, record: WorkspaceTokenRecord) -> None:
        """Create or replace the record for ``record.user_email``."""
        with self._lock:
            records = self._load_records()
            records[self._key(record.user_email)] = json.loads(record.model_dump_json())
            self._save_records(records)
        logger.debug("Stored Google tokens for %s", record.user_email)

    def delete(self, user_email: str) -> bool:
        """Delete a record.

        Returns:
            True if a record was deleted, False if none existed.
        """
        with self._lock:
            records = self._load_records()
            if self._key(user_email) not in records:
                return False
            del records[self._key(user_email)]
            self._save_records(records)
        return True

    def list_emails(self) -> list[str]:
        """List all emails with stored records."""
        with self._lock:
            return sorted(self._load_records().keys())

    def get_status(self, user_email: str) -> TokenStatus:
        """Get the status of a stored record."""
        record = self.get(user_email)

        if record is None:
            with self._lock:
                if self._key(user_email) in self._load_records():
                    return TokenStatus.INVALID
            return TokenStatus.MISSING

        if record.is_expired():
            return TokenStatus.EXPIRED

        return TokenStatus.VALID
