"""Durable storage for the single OAuth credential."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .errors import CacheIOError
from .models import Credential

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenStore:
    """Persists the credential as one JSON file, replaced atomically.

    Nothing is cached in memory: every load() reads the file again so a
    credential removed or edited outside the process is noticed.
    """

    def __init__(self, token_file: Path):
        self.token_file = Path(token_file)

    def _retry_once(self, op: Callable[[], T], what: str) -> T:
        try:
            return op()
        except OSError as first:
            logger.warning(f"Token file {what} failed ({first}), retrying once")
            try:
                return op()
            except OSError as e:
                raise CacheIOError(f"Could not {what} {self.token_file}: {e}") from e

    def load(self) -> Optional[Credential]:
        """Load the credential, or None if absent or unreadable."""
        def _read() -> Optional[str]:
            try:
                return self.token_file.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        raw = self._retry_once(_read, "read")
        if raw is None:
            return None

        try:
            return Credential.model_validate(json.loads(raw))
        except (ValueError, TypeError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.token_file}: {e}")
            return None

    def save(self, credential: Credential) -> None:
        """Write to a temp file in the same directory, fsync, then rename over."""
        payload = credential.model_dump_json(indent=4)

        def _write() -> None:
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.token_file.parent, prefix=".credential-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                if os.name == "posix":
                    os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.token_file)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                raise

        self._retry_once(_write, "write")
        logger.info(f"Credential saved to {self.token_file}")

    def clear(self) -> None:
        """Remove the stored credential; a missing file is fine."""
        def _remove() -> None:
            try:
                self.token_file.unlink()
            except FileNotFoundError:
                pass

        self._retry_once(_remove, "remove")
        logger.info("Stored credential cleared")
