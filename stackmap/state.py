"""
Applied-state snapshot persisted as JSON next to the declarations.

The snapshot maps each resource address to the declared attributes last
applied, the resolved attributes sent to the runtime, provider outputs
(ids, generated values) and the addresses it depended on.
"""
import copy
import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from stackmap.errors import StateError, StateLockError

logger = logging.getLogger(__name__)

STATE_VERSION = 1
DEFAULT_STATE_PATH = "stackmap.state.json"

Entry = Dict[str, Any]


def normalize(value: Any) -> Any:
    """The form ``value`` takes after a round trip through the state file."""
    return json.loads(json.dumps(value, default=str))


def _empty_snapshot() -> Dict[str, Any]:
    return {"version": STATE_VERSION, "serial": 0, "resources": {}}


class Snapshot:
    """Read-only view of the state handed from the store to the planner."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data if data is not None else _empty_snapshot()

    @property
    def serial(self) -> int:
        return self._data.get("serial", 0)

    @property
    def resources(self) -> Dict[str, Entry]:
        return self._data["resources"]

    def __contains__(self, address: str) -> bool:
        return address in self.resources

    def __iter__(self) -> Iterator[str]:
        # Declaration order recorded at each resource's last apply
        return iter(sorted(self.resources, key=lambda a: (self.resources[a].get("index", 0), a)))

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, address: str) -> Optional[Entry]:
        return self.resources.get(address)

    def outputs(self, address: str) -> Dict[str, Any]:
        entry = self.get(address)
        return dict(entry.get("outputs", {})) if entry else {}

    def dependencies(self, address: str) -> List[str]:
        entry = self.get(address)
        return list(entry.get("dependencies", [])) if entry else []

    def dependents(self, address: str) -> List[str]:
        return [a for a in self if address in self.dependencies(a)]

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class StateStore:
    """
    JSON state file guarded by a lock file for cross-process exclusion and a
    thread lock for per-resource read-modify-write from executor workers.
    """

    def __init__(self, path: str = DEFAULT_STATE_PATH):
        self.path = path
        self.lock_path = f"{path}.lock"
        self._mutex = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None
        self._locked = False

    # ------------------------------------------------------------ locking
    def lock(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.lock_path))
        os.makedirs(directory, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise StateLockError(self.lock_path, self._lock_holder()) from None
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        self._locked = True
        logger.debug("acquired state lock %s", self.lock_path)

    def unlock(self) -> None:
        if not self._locked:
            return
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            logger.warning("state lock %s vanished before release", self.lock_path)
        self._locked = False
        logger.debug("released state lock %s", self.lock_path)

    def force_unlock(self) -> bool:
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            return False
        return True

    def _lock_holder(self) -> str:
        try:
            with open(self.lock_path) as fh:
                return fh.read().strip()
        except OSError:
            return ""

    def __enter__(self) -> "StateStore":
        self.lock()
        return self

    def __exit__(self, *exc_info) -> None:
        self.unlock()

    # ------------------------------------------------------------ reading
    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        if not os.path.exists(self.path):
            self._data = _empty_snapshot()
            return self._data
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StateError(f"Cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict) or data.get("version") != STATE_VERSION:
            raise StateError(
                f"Unsupported state file {self.path} (version {data.get('version') if isinstance(data, dict) else '?'})"
            )
        data.setdefault("resources", {})
        data.setdefault("serial", 0)
        self._data = data
        return data

    def snapshot(self) -> Snapshot:
        with self._mutex:
            return Snapshot(copy.deepcopy(self._load()))

    def get(self, address: str) -> Optional[Entry]:
        with self._mutex:
            entry = self._load()["resources"].get(address)
            return copy.deepcopy(entry)

    # ------------------------------------------------------------ writing
    def update(self, address: str, fn: Callable[[Optional[Entry]], Optional[Entry]]) -> Optional[Entry]:
        """
        Atomically replace the entry for ``address`` with ``fn(current)``.
        Returning None from ``fn`` removes the entry. The file is rewritten
        before the lock is released.
        """
        with self._mutex:
            data = copy.deepcopy(self._load())
            new = fn(copy.deepcopy(data["resources"].get(address)))
            if new is None:
                data["resources"].pop(address, None)
            else:
                data["resources"][address] = new
            data["serial"] = data.get("serial", 0) + 1
            self._write(data)
            # Memory follows the file only once the write has landed
            self._data = data
            return copy.deepcopy(new)

    def put(self, address: str, entry: Entry) -> None:
        self.update(address, lambda _current: entry)

    def remove(self, address: str) -> None:
        self.update(address, lambda _current: None)

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".stackmap-", suffix=".tmp", dir=directory)
        except OSError as exc:
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            self._discard(tmp_path)
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc
        except BaseException:
            self._discard(tmp_path)
            raise

    @staticmethod
    def _discard(tmp_path: str) -> None:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
