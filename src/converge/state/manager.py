"""State manager for loading, saving and locking persisted state."""

import fcntl
import json
import os
import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from converge.state.models import State, StateRecord
from converge.utils.errors import StateLockError, StateStoreError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class StateManager:
    """Persists StateRecords in a JSON file.

    Writes are atomic (temporary file + rename) and the previous good file is
    kept as ``<state>.backup``. Record mutations are serialized per key; the
    file itself is written under a single lock. ``lock()`` takes an exclusive
    lock file so two runs cannot mutate the same state.
    """

    def __init__(self, state_path: str):
        self.state_path = Path(state_path)
        self.backup_path = self.state_path.with_name(self.state_path.name + ".backup")
        self.lock_path = self.state_path.with_name(self.state_path.name + ".lock")
        self._lock_fd: Optional[int] = None
        self._current_state: Optional[State] = None
        self._write_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def exists(self) -> bool:
        return self.state_path.exists()

    def load(self) -> State:
        """Load state from disk; a missing file is an empty state.

        Raises:
            StateStoreError: If the file is unreadable or corrupt
        """
        if not self.state_path.exists():
            self._current_state = State()
            return self._current_state

        self._current_state = self._read(self.state_path)
        return self._current_state

    def _read(self, path: Path) -> State:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return State.from_dict(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateStoreError(f"Failed to parse state file {path}: {e}", cause=e)
        except PydanticValidationError as e:
            raise StateStoreError(f"State file {path} has an invalid structure: {e}", cause=e)
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {path}: {e}", cause=e)

    def get_state(self) -> State:
        if self._current_state is None:
            return self.load()
        return self._current_state

    def records(self) -> Dict[str, StateRecord]:
        """Current records keyed by resource key."""
        return dict(self.get_state().records)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    def save(self, key: str, record: StateRecord) -> None:
        """Store a record and persist the state file.

        Raises:
            StateStoreError: If the state cannot be written
        """
        with self._key_lock(key):
            with self._write_lock:
                state = self.get_state()
                state.records[key] = record
                self._persist(state)
        logger.debug(f"Saved state record {key}")

    def delete(self, key: str) -> None:
        """Remove a record and persist the state file."""
        with self._key_lock(key):
            with self._write_lock:
                state = self.get_state()
                if state.records.pop(key, None) is not None:
                    self._persist(state)
        logger.debug(f"Deleted state record {key}")

    def set_outputs(self, outputs: Dict[str, object]) -> None:
        with self._write_lock:
            state = self.get_state()
            state.outputs = dict(outputs)
            self._persist(state)

    def _persist(self, state: State) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        state.serial += 1
        state.timestamp = datetime.now(timezone.utc)

        try:
            if self.state_path.exists():
                shutil.copy2(self.state_path, self.backup_path)

            temp_path = self.state_path.with_name(self.state_path.name + ".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            temp_path.replace(self.state_path)
        except (OSError, TypeError, ValueError) as e:
            raise StateStoreError(f"Failed to save state file: {e}", cause=e)

    def recover(self) -> State:
        """Replace the current state file with the last good backup.

        Raises:
            StateStoreError: If there is no usable backup
        """
        if not self.backup_path.exists():
            raise StateStoreError(
                f"No state backup found at {self.backup_path}",
                suggestions=['Run `converge state reset` to start from empty state']
            )

        state = self._read(self.backup_path)
        if self.state_path.exists():
            self._set_aside(self.state_path)
        shutil.copy2(self.backup_path, self.state_path)
        self._current_state = state
        logger.warning(f"State recovered from backup (serial {state.serial})")
        return state

    def reset(self) -> State:
        """Move the current state file aside and start from an empty state."""
        if self.state_path.exists():
            self._set_aside(self.state_path)
        self._current_state = State()
        with self._write_lock:
            self._persist(self._current_state)
        logger.warning("State reset; previously recorded resources are no longer tracked")
        return self._current_state

    def _set_aside(self, path: Path) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        path.replace(target)
        logger.info(f"Moved {path} to {target}")
        return target

    def lock(self, timeout: float = 30.0) -> None:
        """Acquire the exclusive run lock.

        Raises:
            StateLockError: If the lock cannot be acquired within ``timeout``
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.monotonic()

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start_time > timeout:
                    os.close(fd)
                    raise StateLockError(
                        f"Failed to acquire state lock {self.lock_path} after {timeout}s"
                    )
                time.sleep(0.1)

        self._lock_fd = fd

    def unlock(self) -> None:
        if self._lock_fd is not None:
            try:
                fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                os.close(self._lock_fd)
            finally:
                self._lock_fd = None

    def __enter__(self):
        self.lock()
        try:
            self.load()
        except StateStoreError:
            self.unlock()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unlock()
