"""
LocationStore - file-locked JSON persistence of generated location lists.

Generating locations walks the whole book, so the result is kept per book id
and restored on the next run instead of being rebuilt:

    {"version": 1, "books": {"<book id>": {"break": 150, "locations": [...], "saved_at": 1700000000.0}}}

Uses fcntl.flock() for advisory locking on Unix systems.
"""

import json
import os
import logging
import time
from pathlib import Path
from contextlib import contextmanager
from typing import List, Optional

# Cross-platform file locking: prefer fcntl (Unix); on Windows try msvcrt; otherwise no-op
try:
    import fcntl
    _LOCK_EX = fcntl.LOCK_EX
    _LOCK_SH = fcntl.LOCK_SH
    _LOCK_UN = fcntl.LOCK_UN
    def _flock(fd, operation):
        return fcntl.flock(fd, operation)
except ImportError:
    try:
        import msvcrt
        _LOCK_EX = 1
        _LOCK_SH = 2
        _LOCK_UN = 3
        def _flock(fd, operation):
            # No shared lock in msvcrt, every lock is exclusive
            flag = msvcrt.LK_UNLCK if operation == _LOCK_UN else msvcrt.LK_LOCK
            msvcrt.locking(fd, flag, 0x7fffffff)
    except ImportError:
        _LOCK_EX = _LOCK_SH = _LOCK_UN = 0
        def _flock(fd, operation):
            return

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class LocationStore:
    """
    Usage:
        store = LocationStore("/data/locations.json")
        store.save_locations(book_id, locations.save(), 150)
        saved = store.load_locations(book_id, break_size=150)
    """

    def __init__(self, filepath):
        self.filepath = Path(filepath)
        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _locked_file(self, mode='r'):
        """Shared lock for reads, exclusive lock for writes."""
        lock_type = _LOCK_EX if ('w' in mode or '+' in mode) else _LOCK_SH

        if mode != 'r' and not self.filepath.exists():
            self.filepath.touch()

        f = open(self.filepath, mode)
        try:
            _flock(f.fileno(), lock_type)
            yield f
        finally:
            try:
                _flock(f.fileno(), _LOCK_UN)
            except OSError as e:
                logger.debug(f"Unlock of '{self.filepath}' failed: {e}")
            f.close()

    def _empty(self) -> dict:
        return {"version": STORE_VERSION, "books": {}}

    def load(self) -> dict:
        """Whole store; empty on a missing, empty or corrupt file."""
        if not self.filepath.exists():
            return self._empty()

        try:
            with self._locked_file('r') as f:
                content = f.read().strip()
        except OSError as e:
            logger.error(f"❌ Failed to load '{self.filepath}': {e}")
            return self._empty()

        if not content:
            return self._empty()
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"❌ JSON decode error in '{self.filepath}': {e}")
            return self._empty()

        if not isinstance(data, dict) or not isinstance(data.get("books"), dict):
            logger.warning(f"⚠️ Unexpected layout in '{self.filepath}', ignoring it")
            return self._empty()
        return data

    def update(self, update_func) -> bool:
        """Atomic read-modify-write under one exclusive lock."""
        try:
            with self._locked_file('r+') as f:
                content = f.read().strip()
                try:
                    data = json.loads(content) if content else self._empty()
                except json.JSONDecodeError as e:
                    logger.warning(f"⚠️ Replacing corrupt store '{self.filepath}': {e}")
                    data = self._empty()
                if not isinstance(data, dict) or not isinstance(data.get("books"), dict):
                    data = self._empty()

                data = update_func(data)

                f.seek(0)
                f.truncate()
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            return True
        except OSError as e:
            logger.error(f"❌ Failed to update '{self.filepath}': {e}")
            return False

    def load_locations(self, book_id: str, break_size: Optional[int] = None) -> Optional[List[str]]:
        """Saved locations for a book, or None when absent or generated with another break size."""
        entry = self.load()["books"].get(book_id)
        if not entry:
            return None

        if break_size is not None and entry.get("break") != break_size:
            logger.info(f"Stored locations for '{book_id}' use break {entry.get('break')}, wanted {break_size}")
            return None

        locations = entry.get("locations")
        if not isinstance(locations, list):
            return None
        return locations

    def save_locations(self, book_id: str, locations, break_size: int) -> bool:
        if isinstance(locations, str):
            locations = json.loads(locations)

        def _put(data):
            data["version"] = STORE_VERSION
            data["books"][book_id] = {
                "break": break_size,
                "locations": list(locations),
                "saved_at": time.time(),
            }
            return data

        saved = self.update(_put)
        if saved:
            logger.info(f"✅ Saved {len(locations)} locations for '{book_id}'")
        return saved

    def clear(self, book_id: Optional[str] = None) -> bool:
        def _drop(data):
            if book_id is None:
                data["books"] = {}
            else:
                data["books"].pop(book_id, None)
            return data

        return self.update(_drop)
