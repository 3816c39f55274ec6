"""
Per-talk durable records.

Layout:
    {talks_dir}/{talk_id}/talk.json  ->  {"talk": {...}, "session": {...}}

Rules:
- One file per Talk/Session pair
- Writes are atomic (temp file in the same directory + os.replace), so a
  crash mid-write never corrupts an already-saved record
- Corrupt or unreadable records are skipped on load (logged)
- Talk ids are validated before being used as directory names
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from context.models import Session, Talk
from observability.logger import log_event


_TALK_ID_RE = re.compile(r"^[\w-]+$")

RECORD_FILENAME = "talk.json"


def is_valid_talk_id(talk_id: str) -> bool:
    """Return True if a talk id is safe to use as a directory name."""
    return bool(_TALK_ID_RE.match(talk_id)) and ".." not in talk_id


@dataclass(frozen=True)
class TalkRecord:
    """A persisted Talk/Session pair."""
    talk: Talk
    session: Session


class TalkRecordStore:
    """File-backed record store; one directory per talk."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def write(self, talk: Talk, session: Session) -> None:
        """
        Atomically write one record.

        Raises:
            ValueError if the talk id is unsafe as a directory name.
            OSError on filesystem failure.
        """
        if not is_valid_talk_id(talk.id):
            raise ValueError(f"unsafe talk id: {talk.id!r}")

        talk_dir = self._root / talk.id
        talk_dir.mkdir(parents=True, exist_ok=True)

        payload = json.dumps(
            {"talk": talk.to_dict(), "session": session.to_dict()},
            ensure_ascii=False,
            indent=2,
        )

        fd, tmp_path = tempfile.mkstemp(dir=talk_dir, prefix=".talk-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, talk_dir / RECORD_FILENAME)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def load_all(self) -> list[TalkRecord]:
        """Load every readable record; corrupt ones are skipped."""
        if not self._root.is_dir():
            return []

        records: list[TalkRecord] = []
        for entry in sorted(self._root.iterdir()):
            if not entry.is_dir() or not is_valid_talk_id(entry.name):
                continue
            path = entry / RECORD_FILENAME
            if not path.exists():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                records.append(
                    TalkRecord(
                        talk=Talk.from_dict(data["talk"]),
                        session=Session.from_dict(data["session"]),
                    )
                )
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log_event({
                    "event_type": "talk_record_skipped",
                    "talk_id": entry.name,
                    "error": f"{type(exc).__name__}: {exc}",
                })
        return records

    def delete(self, talk_id: str) -> None:
        """Remove a record (missing records are ignored)."""
        if not is_valid_talk_id(talk_id):
            return
        path = self._root / talk_id / RECORD_FILENAME
        try:
            path.unlink()
        except FileNotFoundError:
            return
        try:
            (self._root / talk_id).rmdir()
        except OSError:
            pass
