"""
Folder hierarchy resolution for the folder write restriction.

``FolderHierarchyResolver`` answers "is folder T inside folder R?" by walking
Drive parent links upward from T, and memoises every answer in a
process-local ``FolderHierarchyCache``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from ..constants import ERROR_MESSAGES, MAX_FOLDER_DEPTH
from ..exceptions import AccessControlError, FolderHierarchyError

logger = logging.getLogger(__name__)

FOLDER_FIELD_NAMES = (
    "folderId",
    "parentFolderId",
    "targetFolderId",
    "destinationFolderId",
    "sourceFolderId",
)

KNOWN_NESTED_KEYS = (
    "metadata",
    "options",
    "file",
    "document",
    "context",
    "request",
    "params",
)

_FOLDERISH_HINTS = ("folder", "parent", "target", "destination")


class ParentLookup(Protocol):
    async def get_parents(self, file_id: str) -> list[str]: ...


@dataclass(frozen=True)
class CacheEntry:
    result: bool
    checked_at: float


class FolderHierarchyCache:
    """
    ``(child, ancestor) -> CacheEntry`` map shared by concurrent checks.

    Inserts are insert-if-absent, so a racing second writer never replaces
    an entry that is already there.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, child_id: str, ancestor_id: str) -> CacheEntry | None:
        return self._entries.get((child_id, ancestor_id))

    def put_if_absent(self, child_id: str, ancestor_id: str, result: bool) -> CacheEntry:
        key = (child_id, ancestor_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(result=result, checked_at=self._clock())
                self._entries[key] = entry
            return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class FolderHierarchyResolver:
    """Decides subtree membership through a ``ParentLookup`` (normally Drive)."""

    def __init__(
        self,
        drive: ParentLookup,
        cache: FolderHierarchyCache | None = None,
        max_depth: int = MAX_FOLDER_DEPTH,
    ) -> None:
        self._drive = drive
        self.cache = cache if cache is not None else FolderHierarchyCache()
        self._max_depth = max_depth

    async def is_within(self, target_id: str, root_id: str) -> bool:
        """
        True if ``target_id`` is ``root_id`` or one of its descendants.

        Raises FolderHierarchyError when a Drive lookup fails; failures are
        not cached.
        """
        if target_id == root_id:
            return True

        cached = self.cache.get(target_id, root_id)
        if cached is not None:
            return cached.result

        try:
            result = await self._walk(target_id, root_id)
        except AccessControlError:
            raise
        except Exception as e:
            logger.error(
                "Folder hierarchy check failed for %s under %s: %s", target_id, root_id, e,
                extra={"event": {"folder": target_id, "root_folder": root_id, "outcome": "error"}},
            )
            raise FolderHierarchyError(
                ERROR_MESSAGES["folder_hierarchy"],
                operation="folder_check",
                service_name="drive",
                context={"target_folder_id": target_id, "allowed_folder_id": root_id},
            ) from e

        return self.cache.put_if_absent(target_id, root_id, result).result

    async def _walk(self, target_id: str, root_id: str) -> bool:
        # Breadth-first over parents: Drive items may have more than one.
        visited = {target_id}
        queue: deque[tuple[str, int]] = deque([(target_id, 0)])
        while queue:
            folder_id, depth = queue.popleft()
            if depth >= self._max_depth:
                logger.warning(
                    "Stopped folder walk from %s at depth %d", target_id, self._max_depth
                )
                continue
            for parent in await self._drive.get_parents(folder_id):
                if parent == root_id:
                    return True
                if parent in visited:
                    continue
                visited.add(parent)
                cached = self.cache.get(parent, root_id)
                if cached is not None:
                    if cached.result:
                        return True
                    continue
                queue.append((parent, depth + 1))
        return False


# ── Parameter inspection ────────────────────────────────────────────────────────


def extract_folder_ids(params: Any, max_depth: int = 2) -> list[str]:
    """
    Collect folder ids referenced by tool parameters, in discovery order.

    Looks at the standard folder fields, Drive ``parents`` arrays, and nested
    objects under known keys (or any nested object with folder-like keys at
    the first level), down to ``max_depth`` levels.
    """
    found: list[str] = []
    seen: set[str] = set()

    def _add(value: Any) -> None:
        if isinstance(value, str):
            value = value.strip()
            if value and value not in seen:
                seen.add(value)
                found.append(value)

    def _visit(obj: Mapping[str, Any], depth: int) -> None:
        if depth > max_depth:
            return
        for name in FOLDER_FIELD_NAMES:
            _add(obj.get(name))
        parents = obj.get("parents")
        if isinstance(parents, (list, tuple)):
            for parent in parents:
                _add(parent)
        for key, value in obj.items():
            if not isinstance(value, Mapping):
                continue
            folderish = any(
                hint in str(k).lower() for k in value for hint in _FOLDERISH_HINTS
            )
            if key in KNOWN_NESTED_KEYS or (folderish and depth < 1):
                _visit(value, depth + 1)

    if isinstance(params, Mapping):
        _visit(params, 0)
    return found
