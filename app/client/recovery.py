"""
Local recovery state for an in-flight bot login.

Holds the pending token and the attempt's start time so a restarted client
can resume polling. Cleared on success, failure and cancel.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path

from app.infrastructure.observability.logging import get_logger, token_preview

logger = get_logger(__name__)

TOKEN_KEY = "pending_login_token"
STARTED_AT_KEY = "login_started_at"


@dataclass(frozen=True)
class PendingLogin:
    token: str
    started_at: float  # unix seconds

    def age(self, now: float) -> float:
        return now - self.started_at


class RecoveryStore:
    """JSON file with the two recovery keys."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def save(self, token: str, started_at: float) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps({TOKEN_KEY: token, STARTED_AT_KEY: started_at}))
        os.replace(tmp_path, self.path)
        logger.debug("Recovery state saved", token_preview=token_preview(token))

    def load(self) -> PendingLogin | None:
        try:
            data = json.loads(self.path.read_text())
            return PendingLogin(token=str(data[TOKEN_KEY]), started_at=float(data[STARTED_AT_KEY]))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable recovery state", error=str(e))
            self.clear()
            return None

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
