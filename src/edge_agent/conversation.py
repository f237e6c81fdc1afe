"""Ordered conversation transcript for one agent instance (atomic on disk)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, path)
    except OSError:
        # Leave the previous file in place; drop the orphaned temp file.
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(frozen=True)
class ConversationMessage:
    """One transcript entry. Immutable once created."""

    role: str
    text: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")
        if not isinstance(self.text, str) or not self.text:
            raise ValueError("text must be a non-empty string")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        return cls(role=data.get("role", ""), text=data.get("text", ""))


# -----------------------------
# ConversationStore
# -----------------------------
class ConversationStore:
    """Append-only transcript with an optional persisted JSON copy.

    Every mutation writes the persisted copy first and only then swaps the
    in-memory sequence, so a failed write leaves both sides unchanged.

    Layout (when ``path`` is given):
        <path>    # list[{"role": ..., "text": ...}]
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._messages: Tuple[ConversationMessage, ...] = self._load()

    # --------- core API ----------
    def append_user(self, text: str) -> ConversationMessage:
        return self._append(ConversationMessage("user", text))

    def append_assistant(self, text: str) -> ConversationMessage:
        return self._append(ConversationMessage("assistant", text))

    def snapshot(self) -> Tuple[ConversationMessage, ...]:
        """Return the transcript in insertion order (read-only)."""
        return self._messages

    def reset(self) -> None:
        """Replace the transcript with an empty one, on disk and in memory."""
        self._commit(())
        logger.info("Conversation reset (path=%s)", self.path)

    # --------- convenience ----------
    def to_wire(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    # --------- internals ----------
    def _append(self, message: ConversationMessage) -> ConversationMessage:
        self._commit(self._messages + (message,))
        return message

    def _commit(self, messages: Tuple[ConversationMessage, ...]) -> None:
        if self.path is not None:
            payload = [m.to_dict() for m in messages]
            _atomic_write_text(self.path, json.dumps(payload, ensure_ascii=False, indent=2))
        self._messages = messages

    def _load(self) -> Tuple[ConversationMessage, ...]:
        if self.path is None or not self.path.exists():
            return ()
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, list):
                raise ValueError("expected a list of messages")
            return tuple(ConversationMessage.from_dict(item) for item in raw)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            # Corruption fallback: keep a backup and start fresh.
            bad = self.path.with_suffix(".corrupt.json")
            logger.warning("Conversation file %s unreadable (%s); moved to %s", self.path, e, bad)
            try:
                self.path.replace(bad)
            except OSError as move_err:
                logger.warning("Could not move corrupt conversation file: %s", move_err)
            return ()
