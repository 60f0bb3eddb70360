"""
Durable Local Storage
On-device key/value store that survives process restarts.

Values are strings (callers store JSON-encoded payloads). The whole store
lives in a single JSON file that is rewritten atomically on every change.
All public methods are coroutines; file I/O runs in a worker thread so the
event loop is never blocked.

Callers must treat every failure as "absent" / best-effort - these methods
raise OSError/ValueError and leave the decision to the caller.
"""
import asyncio
import json
import logging
import os
import tempfile
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class LocalStorage:
    """JSON-file backed key/value store"""

    def __init__(self, path: str):
        """
        Args:
            path: Location of the JSON file (created on first write)
        """
        self.path = path
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[str]:
        """Return the stored string for key, or None if absent"""
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value"""
        if not isinstance(value, str):
            raise TypeError(f"LocalStorage values must be str, got {type(value).__name__}")
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        """Delete key; removing a missing key is not an error"""
        await asyncio.to_thread(self._remove_sync, key)

    def _get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def _remove_sync(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)

    def _read_all(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}

        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Corrupt local storage file: {self.path}")
        return data

    def _write_all(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        # Write to a sibling temp file then rename so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.storage-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Local storage written: {len(data)} keys")
