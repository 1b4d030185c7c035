"""
quant-arena Infrastructure: State Store

Persistent per-bot state with atomic writes. One JSON document holds every
bot's ledger (portfolio, positions, cooldowns, trade stats, value history)
and decision log. Reads are served from the in-memory copy, so a write is
visible to the next read in the same process.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

STATE_VERSION = 1

DEFAULT_STATE = {
    "version": STATE_VERSION,
    "bots": {},  # bot_id -> {"ledger": {...}, "decision_log": [...], "paused": bool}
    "updated_at": None,
}


def _default_state() -> Dict[str, Any]:
    return {"version": STATE_VERSION, "bots": {}, "updated_at": None}


class StateStore:
    """
    Persistent state storage using JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Read-your-writes through an in-memory copy
    - Thread-safe operations
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: data/arena_state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            state_file = os.getenv("STATE_FILE", "data/arena_state.json")
            self.state_file = Path(state_file)

        # Ensure directory exists
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged
        """
        with self._lock:
            if self._state is not None:
                return self._state

            if not self.state_file.exists():
                logger.debug("No state file found, using defaults")
                self._state = _default_state()
                return self._state

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load state: {e}")
                self._state = _default_state()
                return self._state

            if not isinstance(data, dict):
                logger.warning("Invalid state file format, using defaults")
                self._state = _default_state()
                return self._state

            state = {**_default_state(), **data}
            if not isinstance(state.get("bots"), dict):
                state["bots"] = {}
            self._state = state
            logger.debug(f"Loaded state for {len(state['bots'])} bot(s)")
            return state

    def save(self, state: Optional[Dict[str, Any]] = None) -> None:
        """
        Save state to file atomically.

        Args:
            state: State dict to save (defaults to the in-memory copy)
        """
        with self._lock:
            if state is not None:
                self._state = state
            state = self.load()
            state["updated_at"] = datetime.now(timezone.utc).isoformat()

            temp_path = None
            try:
                # Write to temp file first
                temp_fd, temp_path = tempfile.mkstemp(
                    dir=self.state_file.parent,
                    prefix=".arena_state_",
                    suffix=".json.tmp"
                )

                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2, default=str)

                # Atomic rename
                os.replace(temp_path, self.state_file)
                logger.debug("Saved state to file")

            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save state: {e}")
                if temp_path and os.path.exists(temp_path):
                    os.unlink(temp_path)

    # ------------------------------------------------------------------
    # Per-bot helpers
    # ------------------------------------------------------------------

    def load_bot(self, bot_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self.load()["bots"].get(bot_id)
            return dict(record) if record else None

    def save_bot(self, bot_id: str, ledger: Dict[str, Any], decision_log: List[Dict[str, Any]],
                 paused: bool = False) -> None:
        with self._lock:
            state = self.load()
            state["bots"][bot_id] = {
                "ledger": ledger,
                "decision_log": decision_log,
                "paused": paused,
            }
            self.save()

    def remove_bot(self, bot_id: str) -> None:
        with self._lock:
            if self.load()["bots"].pop(bot_id, None) is not None:
                self.save()

    def bot_ids(self) -> List[str]:
        with self._lock:
            return list(self.load()["bots"].keys())
