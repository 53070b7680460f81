"""Archive storage backends and quota enforcement."""
from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Iterable

from .config import GIB, StorageSettings
from .event_log import EventLog

logger = logging.getLogger(__name__)

IMPORTANT_MARKER = "_IMPORTANT"
ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DEFAULT_EXTENSION = "mp4"
DEFAULT_WARNING_MARGIN_BYTES = GIB

_TIMESTAMP_RE = re.compile(r"_(\d{8}_\d{6})(?:-\d+)?(?:_IMPORTANT)?\.[^.]+$", re.IGNORECASE)
_MARKER_RE = re.compile(r"_IMPORTANT(?=\.[^.]+$)", re.IGNORECASE)


class ArchiveInUseError(RuntimeError):
    """Raised when an operation targets the clip currently being written."""


class ProtectedArchiveError(PermissionError):
    """Raised when deleting a clip that carries the protection marker."""


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------
def build_archive_name(
    prefix: str,
    when: datetime,
    extension: str = DEFAULT_EXTENSION,
    *,
    sequence: int = 0,
) -> str:
    """Return ``<prefix>_<yyyyMMdd_HHmmss>[-n].<ext>`` for *when*."""

    stamp = when.strftime(ARCHIVE_TIMESTAMP_FORMAT)
    suffix = f"-{sequence}" if sequence else ""
    return f"{prefix}_{stamp}{suffix}.{extension}"


def parse_archive_timestamp(name: str) -> datetime | None:
    """Extract the capture time embedded in an archive name."""

    match = _TIMESTAMP_RE.search(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), ARCHIVE_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def is_protected(name: str) -> bool:
    return IMPORTANT_MARKER.lower() in name.lower()


def protected_name(name: str, important: bool) -> str:
    """Return *name* with the protection marker added or removed."""

    if important:
        if is_protected(name):
            return name
        stem, dot, extension = name.rpartition(".")
        if not dot:
            return f"{name}{IMPORTANT_MARKER}"
        return f"{stem}{IMPORTANT_MARKER}.{extension}"
    if not is_protected(name):
        return name
    return _MARKER_RE.sub("", name)


def validate_archive_name(name: str | None, extension: str = DEFAULT_EXTENSION) -> str:
    """Return a cleaned archive name or raise :class:`ValueError`."""

    if name is None:
        raise ValueError("Missing name")
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Missing name")
    if "/" in cleaned or "\\" in cleaned or cleaned.startswith(".") or "\x00" in cleaned:
        raise ValueError("Invalid archive name")
    if not cleaned.lower().endswith(f".{extension.lower()}"):
        raise ValueError(f"Archive names must end with .{extension}")
    return cleaned


def _age_key(entry: "ArchiveEntry") -> tuple[bool, datetime, str]:
    # Unparseable names sort after every timestamped clip.
    timestamp = entry.timestamp
    return (timestamp is None, timestamp or datetime.min, entry.name)


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """A finished clip stored by one of the backends."""

    name: str
    size: int
    backend: str
    protected: bool = False
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": int(self.size),
            "size_kb": int(self.size) // 1024,
            "protected": bool(self.protected),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "backend": self.backend,
        }


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class StorageBackend(ABC):
    """A directory that holds archive clips."""

    identifier = "backend"

    def __init__(self, root: Path | str, *, extension: str = DEFAULT_EXTENSION) -> None:
        self._root = Path(root)
        self._extension = extension.lower().lstrip(".")

    @property
    def root(self) -> Path:
        return self._root

    @property
    def extension(self) -> str:
        return self._extension

    @abstractmethod
    def available(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def free_space(self) -> int:  # pragma: no cover - interface only
        raise NotImplementedError

    def path_for(self, name: str) -> Path:
        return self._root / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def list_files(self) -> list[ArchiveEntry]:
        entries: list[ArchiveEntry] = []
        suffix = f".{self._extension}"
        try:
            candidates = list(self._root.iterdir())
        except FileNotFoundError:
            return entries
        except OSError as exc:
            logger.warning("Unable to list %s storage at %s: %s", self.identifier, self._root, exc)
            return entries
        for path in candidates:
            if path.suffix.lower() != suffix:
                continue
            try:
                stat_result = path.stat()
            except OSError:
                # Removed between listing and stat.
                continue
            if not path.is_file():
                continue
            entries.append(
                ArchiveEntry(
                    name=path.name,
                    size=int(stat_result.st_size),
                    backend=self.identifier,
                    protected=is_protected(path.name),
                    timestamp=parse_archive_timestamp(path.name),
                )
            )
        return entries

    def size(self, name: str) -> int:
        return int(self.path_for(name).stat().st_size)

    def delete(self, name: str) -> None:
        self.path_for(name).unlink()

    def rename(self, name: str, new_name: str) -> None:
        source = self.path_for(name)
        target = self.path_for(new_name)
        if target.exists():
            raise FileExistsError(new_name)
        source.rename(target)

    def open_for_write(self, name: str) -> BinaryIO:
        """Create *name* exclusively and return a writable binary handle."""

        self.prepare()
        return open(self.path_for(name), "xb")

    def prepare(self) -> None:
        return None

    def describe(self) -> dict[str, object]:
        return {"backend": self.identifier, "path": str(self._root)}


class LocalDirectoryBackend(StorageBackend):
    """The application's own recordings directory."""

    identifier = "local"

    def prepare(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def available(self) -> bool:
        try:
            self.prepare()
        except OSError as exc:
            logger.error("Recordings directory %s unavailable: %s", self._root, exc)
            return False
        return os.access(self._root, os.W_OK | os.X_OK)

    def free_space(self) -> int:
        target = self._root if self._root.exists() else self._root.parent
        try:
            return int(shutil.disk_usage(target).free)
        except OSError as exc:
            logger.warning("Unable to read free space for %s: %s", target, exc)
            return 0


class ExternalFolderBackend(StorageBackend):
    """A user-chosen folder which may disappear or lose write permission.

    The folder is never created here; access is only granted when it already
    exists and is writable.
    """

    identifier = "external"

    def __init__(
        self,
        root: Path | str,
        *,
        extension: str = DEFAULT_EXTENSION,
        fallback_free_space: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(root, extension=extension)
        self._fallback_free_space = fallback_free_space

    def available(self) -> bool:
        return self._root.is_dir() and os.access(self._root, os.W_OK | os.X_OK)

    def free_space(self) -> int:
        try:
            free = int(shutil.disk_usage(self._root).free)
        except OSError as exc:
            logger.error("Failed to read free space for external folder %s: %s", self._root, exc)
            free = 0
        if free > 0:
            return free
        if self._fallback_free_space is not None:
            return int(self._fallback_free_space())
        return 0

    def open_for_write(self, name: str) -> BinaryIO:
        if not self.available():
            raise PermissionError(f"External folder {self._root} is not writable")
        return super().open_for_write(name)


# ---------------------------------------------------------------------------
# Quota manager
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StorageStatus:
    """Storage usage recomputed on demand."""

    used_bytes: int
    free_bytes: int
    low_disk: bool
    approaching_quota: bool
    max_total_bytes: int
    min_free_bytes: int
    backend: str

    def to_dict(self) -> dict[str, object]:
        return {
            "used_bytes": self.used_bytes,
            "free_bytes": self.free_bytes,
            "used_gb": round(self.used_bytes / GIB, 2),
            "free_gb": round(self.free_bytes / GIB, 2),
            "low_disk": self.low_disk,
            "approaching_quota": self.approaching_quota,
            "max_total_bytes": self.max_total_bytes,
            "min_free_bytes": self.min_free_bytes,
            "backend": self.backend,
        }


class StorageQuotaManager:
    """Keep the archive within its size quota and free-space floor."""

    def __init__(
        self,
        settings_provider: Callable[[], StorageSettings],
        default_backend: StorageBackend,
        *,
        external_factory: Callable[..., StorageBackend] = ExternalFolderBackend,
        warning_margin_bytes: int = DEFAULT_WARNING_MARGIN_BYTES,
        event_log: EventLog | None = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._default = default_backend
        self._external_factory = external_factory
        self._external: StorageBackend | None = None
        self._warning_margin = int(warning_margin_bytes)
        self._event_log = event_log
        self._cleanup_lock = threading.Lock()
        self._thread_lock = threading.Lock()
        self._cleanup_thread: threading.Thread | None = None
        self._in_use: frozenset[str] = frozenset()
        self._in_use_lock = threading.Lock()
        self._fallback_logged = False

    # ------------------------------ backends -------------------------------
    @property
    def default_backend(self) -> StorageBackend:
        return self._default

    def settings(self) -> StorageSettings:
        return self._settings_provider()

    def _external_backend(self, path: str) -> StorageBackend:
        backend = self._external
        if backend is None or str(backend.root) != str(Path(path)):
            backend = self._external_factory(
                path,
                extension=self._default.extension,
                fallback_free_space=self._default.free_space,
            )
            self._external = backend
        return backend

    def active_backend(self) -> StorageBackend:
        """Return the configured backend, falling back to the default one."""

        settings = self._settings_provider()
        if settings.backend == "external" and settings.external_path:
            backend = self._external_backend(settings.external_path)
            if backend.available():
                self._fallback_logged = False
                return backend
            if not self._fallback_logged:
                logger.warning(
                    "External folder %s unavailable; using %s",
                    settings.external_path,
                    self._default.root,
                )
                if self._event_log is not None:
                    self._event_log.record(
                        "storage",
                        "backend_fallback",
                        "External folder unavailable; recording to the default directory.",
                        metadata={"path": settings.external_path},
                    )
                self._fallback_logged = True
        return self._default

    def backends(self) -> list[StorageBackend]:
        active = self.active_backend()
        if active is self._default:
            return [active]
        return [active, self._default]

    def _backend_by_id(self, identifier: str) -> StorageBackend:
        for backend in self.backends():
            if backend.identifier == identifier:
                return backend
        raise FileNotFoundError(f"Storage backend {identifier!r} is not active")

    def _entries(self) -> list[ArchiveEntry]:
        entries: list[ArchiveEntry] = []
        for backend in self.backends():
            entries.extend(backend.list_files())
        return entries

    # ------------------------------ in-use ---------------------------------
    def mark_in_use(self, name: str) -> None:
        with self._in_use_lock:
            self._in_use = self._in_use | {name}

    def release(self, name: str) -> None:
        with self._in_use_lock:
            self._in_use = self._in_use - {name}

    def in_use(self) -> frozenset[str]:
        return self._in_use

    # ------------------------------ cleanup --------------------------------
    def cleanup(self) -> list[str]:
        """Delete the oldest unprotected clips until the quota is satisfied.

        Files are ordered by the timestamp embedded in their names. The walk
        stops once the total size is within ``max_total`` and the free space
        of the active volume is at least ``min_free``. Protected and in-use
        files are skipped; a failed delete is logged and the walk continues.
        """

        with self._cleanup_lock:
            settings = self._settings_provider()
            max_total = settings.max_total_bytes
            min_free = settings.min_free_bytes
            active = self.active_backend()
            entries = sorted(self._entries(), key=_age_key)
            total = sum(entry.size for entry in entries)
            free = active.free_space()
            in_use = self._in_use
            deleted: list[str] = []

            for entry in entries:
                over_quota = total > max_total
                low_space = free < min_free
                if not over_quota and not low_space:
                    break
                if entry.protected or entry.name in in_use:
                    continue
                reclaims_space = entry.backend == active.identifier
                if not over_quota and not reclaims_space:
                    continue
                try:
                    self._backend_by_id(entry.backend).delete(entry.name)
                except FileNotFoundError:
                    total -= entry.size
                    continue
                except OSError as exc:
                    logger.warning("Failed to delete archive %s: %s", entry.name, exc)
                    continue
                total -= entry.size
                if reclaims_space:
                    free += entry.size
                deleted.append(entry.name)
                logger.info("Deleted old recording %s (%d bytes)", entry.name, entry.size)

            if deleted and self._event_log is not None:
                self._event_log.record(
                    "storage",
                    "cleanup",
                    f"Removed {len(deleted)} old recording(s) to stay within quota.",
                    metadata={"deleted": deleted, "total_bytes": total, "free_bytes": free},
                )
            return deleted

    def cleanup_in_background(self) -> threading.Thread | None:
        """Run :meth:`cleanup` on a daemon thread unless one is already running."""

        with self._thread_lock:
            current = self._cleanup_thread
            if current is not None and current.is_alive():
                return None
            thread = threading.Thread(
                target=self._run_cleanup, name="storage-cleanup", daemon=True
            )
            self._cleanup_thread = thread
            thread.start()
            return thread

    def _run_cleanup(self) -> None:
        try:
            self.cleanup()
        except Exception:
            logger.exception("Storage cleanup failed")

    # ------------------------------ status ---------------------------------
    def get_status(self) -> StorageStatus:
        settings = self._settings_provider()
        active = self.active_backend()
        used = sum(entry.size for entry in self._entries())
        free = active.free_space()
        max_total = settings.max_total_bytes
        min_free = settings.min_free_bytes
        return StorageStatus(
            used_bytes=used,
            free_bytes=free,
            low_disk=free < min_free,
            approaching_quota=(max_total - used) < self._warning_margin,
            max_total_bytes=max_total,
            min_free_bytes=min_free,
            backend=active.identifier,
        )

    def has_enough_space(self) -> bool:
        return not self.get_status().low_disk

    # ------------------------------ archive --------------------------------
    def list_archives(self) -> list[ArchiveEntry]:
        """Return every clip newest first, de-duplicated by name."""

        seen: set[str] = set()
        unique: list[ArchiveEntry] = []
        for entry in self._entries():
            if entry.name in seen:
                continue
            seen.add(entry.name)
            unique.append(entry)
        unique.sort(key=_age_key, reverse=True)
        return unique

    def _locate(self, name: str) -> StorageBackend:
        for backend in self.backends():
            if backend.exists(name):
                return backend
        raise FileNotFoundError(name)

    def _check_name(self, name: str | None) -> str:
        return validate_archive_name(name, self._default.extension)

    def find(self, name: str | None) -> ArchiveEntry:
        cleaned = self._check_name(name)
        backend = self._locate(cleaned)
        return ArchiveEntry(
            name=cleaned,
            size=backend.size(cleaned),
            backend=backend.identifier,
            protected=is_protected(cleaned),
            timestamp=parse_archive_timestamp(cleaned),
        )

    def open_path(self, name: str | None) -> Path:
        cleaned = self._check_name(name)
        return self._locate(cleaned).path_for(cleaned)

    def delete(self, name: str | None) -> None:
        cleaned = self._check_name(name)
        backend = self._locate(cleaned)
        if is_protected(cleaned):
            raise ProtectedArchiveError(f"{cleaned} is protected")
        if cleaned in self._in_use:
            raise ArchiveInUseError(f"{cleaned} is still being recorded")
        backend.delete(cleaned)
        logger.info("Deleted recording %s", cleaned)

    def mark_important(self, name: str | None, important: bool) -> str:
        """Add or remove the protection marker, returning the resulting name."""

        cleaned = self._check_name(name)
        backend = self._locate(cleaned)
        new_name = protected_name(cleaned, important)
        if new_name == cleaned:
            return cleaned
        if cleaned in self._in_use:
            raise ArchiveInUseError(f"{cleaned} is still being recorded")
        backend.rename(cleaned, new_name)
        logger.info("Renamed recording %s -> %s", cleaned, new_name)
        return new_name

    def unique_name(self, prefix: str, when: datetime) -> str:
        """Return an archive name for *when* that no backend already holds."""

        backends: Iterable[StorageBackend] = self.backends()
        sequence = 0
        while True:
            candidate = build_archive_name(prefix, when, self._default.extension, sequence=sequence)
            if candidate not in self._in_use and not any(
                backend.exists(candidate) or backend.exists(protected_name(candidate, True))
                for backend in backends
            ):
                return candidate
            sequence += 1


__all__ = [
    "ARCHIVE_TIMESTAMP_FORMAT",
    "ArchiveEntry",
    "ArchiveInUseError",
    "ExternalFolderBackend",
    "IMPORTANT_MARKER",
    "LocalDirectoryBackend",
    "ProtectedArchiveError",
    "StorageBackend",
    "StorageQuotaManager",
    "StorageStatus",
    "build_archive_name",
    "is_protected",
    "parse_archive_timestamp",
    "protected_name",
    "validate_archive_name",
]
