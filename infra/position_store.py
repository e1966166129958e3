"""
memetrader Infrastructure: Position Store

Durable collection of Position records with atomic writes.

Layout on disk:
    {"version": 1, "positions": [ {flat position fields}, ... ]}

Closed positions stay on disk for history; only ACTIVE ones are handed to
the risk engine on restart.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
import logging

from core.position_state import Position, PositionStatus

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class PositionStore:
    """
    Persistent position storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename) on every mutation
    - Per-position locks so one position is never evaluated twice at once
    - Records that fail to parse are preserved verbatim on rewrite
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize position store.

        Args:
            path: Path to positions JSON file (default: $POSITIONS_FILE or data/positions.json)
        """
        self.path = Path(path or os.getenv("POSITIONS_FILE", "data/positions.json"))
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._positions: Dict[str, Position] = {}
        self._unreadable: List[Dict[str, Any]] = []
        self._write_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

        self._load()
        logger.info(
            f"Initialized PositionStore at {self.path} "
            f"({len(self._positions)} positions, {len(self.active())} active)"
        )

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No positions file found, starting empty")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            backup = self.path.with_name(
                f"{self.path.name}.corrupt-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}"
            )
            logger.error(f"Failed to read positions file {self.path}: {e}; moving it to {backup}")
            os.replace(self.path, backup)
            return

        if not isinstance(data, dict) or not isinstance(data.get("positions"), list):
            raise ValueError(f"Unrecognized positions file layout in {self.path}")

        version = data.get("version", STORE_VERSION)
        if version != STORE_VERSION:
            raise ValueError(f"Unsupported positions file version {version} (expected {STORE_VERSION})")

        for record in data["positions"]:
            try:
                position = Position.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping unreadable position record {record.get('id', '?')}: {e}")
                self._unreadable.append(record)
                continue
            self._positions[position.id] = position

    def _write(self) -> None:
        """Write the whole collection atomically. Caller holds _write_lock."""
        payload = {
            "version": STORE_VERSION,
            "positions": [p.to_dict() for p in self._positions.values()] + list(self._unreadable),
        }

        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".positions_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, self.path)
        except Exception as e:
            logger.error(f"Failed to save positions to {self.path}: {e}")
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    @contextmanager
    def lock(self, position_id: str) -> Iterator[None]:
        """Hold the per-position lock"""
        with self._locks_guard:
            position_lock = self._locks.setdefault(position_id, threading.Lock())
        with position_lock:
            yield

    def add(self, position: Position) -> Position:
        """Insert a new position and persist"""
        with self._write_lock:
            if position.id in self._positions:
                raise ValueError(f"Position id {position.id} already exists")
            self._positions[position.id] = position
            self._write()
        logger.debug(f"Stored new position {position.id} ({position.symbol})")
        return position

    def save(self, position: Position) -> None:
        """Persist the current state of a known position"""
        with self._write_lock:
            if position.id not in self._positions:
                raise KeyError(f"Unknown position {position.id}")
            self._positions[position.id] = position
            self._write()

    def get(self, position_id: str) -> Optional[Position]:
        with self._write_lock:
            return self._positions.get(position_id)

    def all(self) -> List[Position]:
        """Snapshot of every position, safe against concurrent add()"""
        with self._write_lock:
            return list(self._positions.values())

    def active(self) -> List[Position]:
        return [p for p in self.all() if p.status is PositionStatus.ACTIVE]

    def by_status(self, status: PositionStatus) -> List[Position]:
        return [p for p in self.all() if p.status is status]

    def reload(self) -> List[Position]:
        """Re-read the file and return the ACTIVE positions"""
        with self._write_lock:
            self._positions = {}
            self._unreadable = []
            self._load()
        return self.active()

    def __len__(self) -> int:
        with self._write_lock:
            return len(self._positions)
