"""Key-value stores for the credential and the dev session snapshot."""

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger("agenttunnel-state")

ENV_FILES = [".env", ".env.local", ".env.development", ".env.production"]


class StateStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def merge(self, key: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    def remove(self, key: str) -> None: ...


def merge_json(existing: Optional[str], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge ``patch`` over a JSON object string; unreadable input starts fresh."""
    current: Dict[str, Any] = {}
    if existing:
        try:
            loaded = json.loads(existing)
            if isinstance(loaded, dict):
                current = loaded
        except json.JSONDecodeError:
            logger.warning("Existing session state is not valid JSON, replacing it")
    current.update(patch)
    return current


class MemoryStateStore:
    """Dict-backed store for tests and for embedding agenttunnel in another program."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value

    def merge(self, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        merged = merge_json(self.values.get(key), patch)
        self.values[key] = json.dumps(merged)
        return merged

    def remove(self, key: str) -> None:
        self.values.pop(key, None)


class EnvFileStore:
    """Stores entries as ``KEY=value`` lines in the project's dotenv file.

    Values are written on a single line so they can be removed with a line
    match. The first existing file of ``ENV_FILES`` is used for writes and
    ``.env`` is created if none exists. ``os.environ`` mirrors every write.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory else Path.cwd()
        self.lock = threading.Lock()

    def _env_paths(self) -> List[Path]:
        return [self.directory / name for name in ENV_FILES]

    def _read_file_value(self, key: str) -> Optional[str]:
        pattern = re.compile(rf"^{re.escape(key)}=(.*)$", re.MULTILINE)
        value = None
        # Later files override earlier ones, like .env.local over .env
        for path in self._env_paths():
            if path.exists():
                match = pattern.search(path.read_text(encoding="utf-8"))
                if match:
                    value = match.group(1).strip()
        return value

    def get(self, key: str) -> Optional[str]:
        with self.lock:
            value = self._read_file_value(key)
        if value is None:
            value = os.environ.get(key)
        return value

    def set(self, key: str, value: str) -> None:
        single_line = value.replace("\n", "")
        with self.lock:
            self._remove_unlocked(key)
            target = next((p for p in self._env_paths() if p.exists()), None)
            if target is not None:
                content = target.read_text(encoding="utf-8")
                separator = "" if not content or content.endswith("\n") else "\n"
                with open(target, "a", encoding="utf-8") as f:
                    f.write(f"{separator}{key}={single_line}\n")
            else:
                target = self.directory / ".env"
                target.write_text(f"{key}={single_line}\n", encoding="utf-8")
            os.environ[key] = single_line
        logger.debug(f"Stored {key} in {target}")

    def merge(self, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        merged = merge_json(self.get(key), patch)
        self.set(key, json.dumps(merged))
        logger.info(f"{key} updated successfully.")
        return merged

    def remove(self, key: str) -> None:
        with self.lock:
            self._remove_unlocked(key)
            os.environ.pop(key, None)

    def _remove_unlocked(self, key: str) -> None:
        pattern = re.compile(rf"^{re.escape(key)}=.*(?:\n|$)", re.MULTILINE)
        for path in self._env_paths():
            if not path.exists():
                continue
            content = path.read_text(encoding="utf-8")
            updated = pattern.sub("", content)
            if updated != content:
                path.write_text(updated, encoding="utf-8")
                logger.info(f"Removed {key} from {path.name}")
