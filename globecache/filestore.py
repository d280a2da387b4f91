"""
filestore.py - Layered persistent byte store

A FileStore maps relative, '/'-separated store paths onto a stack of root
directories.  The first root is writable and is where retrieved data is
saved; any further roots are read-only (bundled data, shared caches) and
are searched in order after the writable one.

Writes go to a unique temp file next to the destination and are moved into
place with os.replace() once complete, so readers never observe a partial
file under its final name.

Usage:
    store = FileStore("~/.globecache-data/cache", read_locations=["/opt/data"])

    with store.get_output_stream("imagery/12/655/1583.jpg") as out:
        out.write(data)

    if store.exists("imagery/12/655/1583.jpg"):
        data = store.read_bytes("imagery/12/655/1583.jpg")

    names = store.list_file_names("imagery/12/655", SuffixFilter(".jpg"))
"""

import os
import time
import uuid
import threading
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional, Union

from globecache.gcstats import inc_stat
from globecache.utils.constants import TEMP_SUFFIX, MB

import logging
log = logging.getLogger(__name__)


# ============================================================================
# Filters
# ============================================================================

class FileStoreFilter(object):
    """Predicate over candidate store names.

    Subclasses override accept().  Plain callables taking (store, name) are
    accepted anywhere a FileStoreFilter is.
    """

    def accept(self, store, name):
        raise NotImplementedError

    def __call__(self, store, name):
        return self.accept(store, name)


class AllFilesFilter(FileStoreFilter):
    def accept(self, store, name):
        return True


class SuffixFilter(FileStoreFilter):
    def __init__(self, *suffixes):
        if not suffixes:
            raise ValueError("At least one suffix is required")
        self.suffixes = tuple(s.lower() for s in suffixes)

    def accept(self, store, name):
        return name.lower().endswith(self.suffixes)

    def __repr__(self):
        return f"SuffixFilter{self.suffixes}"


FilterLike = Union[FileStoreFilter, Callable[["FileStore", str], bool], None]


def _as_predicate(file_filter: FilterLike):
    if file_filter is None:
        return lambda store, name: True
    if hasattr(file_filter, 'accept'):
        return file_filter.accept
    if callable(file_filter):
        return file_filter
    raise ValueError(f"Not a file filter: {file_filter!r}")


def _is_temp_name(name: str) -> bool:
    return name.startswith('.') and name.endswith(TEMP_SUFFIX)


# ============================================================================
# FileStore
# ============================================================================

class FileStore(object):

    def __init__(self, write_location, read_locations: Iterable = (), mark_when_used=True):
        if not write_location:
            raise ValueError("Write location is required")

        self._write_root = Path(os.path.expanduser(str(write_location))).resolve()
        self._write_root.mkdir(parents=True, exist_ok=True)
        self._read_roots = [
            Path(os.path.expanduser(str(p))).resolve()
            for p in (read_locations or ())
            if p
        ]
        self.mark_when_used = mark_when_used
        self._sweep_lock = threading.Lock()
        log.debug(f"FileStore write root {self._write_root}, read roots {self._read_roots}")

    def __repr__(self):
        return f"FileStore({str(self._write_root)!r}, read_locations={[str(p) for p in self._read_roots]})"

    def get_write_location(self) -> Path:
        return self._write_root

    def get_read_locations(self) -> List[Path]:
        return list(self._read_roots)

    def _roots(self) -> List[Path]:
        return [self._write_root] + self._read_roots

    @staticmethod
    def _normalize(path, allow_root=False) -> str:
        """Validate a store path and return it in canonical '/'-separated form."""
        if path is None:
            raise ValueError("Store path is None")
        s = str(path).replace('\\', '/').strip()
        if not s or s == '.':
            if allow_root:
                return ''
            raise ValueError("Store path is empty")
        p = PurePosixPath(s)
        if p.is_absolute() or (len(s) > 1 and s[1] == ':'):
            raise ValueError(f"Store path must be relative: {path!r}")
        parts = [part for part in p.parts if part not in ('', '.')]
        if '..' in parts:
            raise ValueError(f"Store path must not leave the store: {path!r}")
        if not parts:
            if allow_root:
                return ''
            raise ValueError("Store path is empty")
        return '/'.join(parts)

    # -----------------------------
    # Lookup
    # -----------------------------
    def new_file_location(self, path) -> Path:
        """Absolute location for `path` under the writable root, parents created."""
        rel = self._normalize(path)
        dest = self._write_root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        return dest

    def find_file(self, path) -> Optional[Path]:
        rel = self._normalize(path)
        for root in self._roots():
            candidate = root / rel
            if candidate.is_file():
                if self.mark_when_used and root == self._write_root:
                    try:
                        os.utime(candidate, None)
                    except OSError:
                        # Raced with a remove or sweep; the lookup result still stands
                        pass
                return candidate
        return None

    def exists(self, path) -> bool:
        rel = self._normalize(path)
        return any((root / rel).is_file() for root in self._roots())

    def open(self, path):
        found = self.find_file(path)
        if found is None:
            raise FileNotFoundError(f"No store entry for {path}")
        return open(found, 'rb')

    def read_bytes(self, path) -> Optional[bytes]:
        found = self.find_file(path)
        if found is None:
            inc_stat('filestore_miss')
            return None
        try:
            data = found.read_bytes()
        except FileNotFoundError:
            # Raced with a concurrent remove; treat as miss
            inc_stat('filestore_miss')
            return None
        inc_stat('filestore_hit')
        return data

    # -----------------------------
    # Writes
    # -----------------------------
    @contextmanager
    def get_output_stream(self, path):
        """Yield a binary file that becomes visible under `path` only on success."""
        dest = self.new_file_location(path)
        temp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}")
        h = open(temp, 'wb')
        try:
            yield h
            h.flush()
            os.fsync(h.fileno())
            h.close()
            os.replace(temp, dest)
        except BaseException:
            if not h.closed:
                h.close()
            try:
                os.remove(temp)
            except FileNotFoundError:
                pass
            log.debug(f"Discarded incomplete write of {path}")
            raise
        inc_stat('filestore_writes')

    def write_bytes(self, path, data) -> Path:
        if data is None:
            raise ValueError("Data is None")
        with self.get_output_stream(path) as out:
            out.write(data)
        return self._write_root / self._normalize(path)

    def remove_file(self, path) -> bool:
        rel = self._normalize(path)
        target = self._write_root / rel
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        log.debug(f"Removed {rel} from {self._write_root}")
        return True

    # -----------------------------
    # Enumeration
    # -----------------------------
    def _walk(self, path, file_filter, recurse, exit_branch_on_match):
        rel = self._normalize(path, allow_root=True)
        accept = _as_predicate(file_filter)
        names = set()

        for root in self._roots():
            base = root / rel if rel else root
            if not base.is_dir():
                continue
            self._walk_dir(root, base, accept, recurse, exit_branch_on_match, names)

        return sorted(names)

    def _walk_dir(self, root, directory, accept, recurse, exit_branch_on_match, names):
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except (FileNotFoundError, NotADirectoryError):
            return

        for entry in entries:
            if _is_temp_name(entry.name):
                continue
            name = Path(entry.path).relative_to(root).as_posix()
            if entry.is_dir():
                if exit_branch_on_match and accept(self, name):
                    names.add(name)
                    continue
                if recurse:
                    self._walk_dir(root, entry.path, accept, recurse, exit_branch_on_match, names)
            elif entry.is_file() and accept(self, name):
                names.add(name)

    def list_file_names(self, path='', file_filter: FilterLike = None) -> List[str]:
        """Store names of files directly under `path` that pass the filter."""
        return self._walk(path, file_filter, recurse=False, exit_branch_on_match=False)

    def list_all_file_names(self, path='', file_filter: FilterLike = None) -> List[str]:
        return self._walk(path, file_filter, recurse=True, exit_branch_on_match=False)

    def list_top_file_names(self, path='', file_filter: FilterLike = None) -> List[str]:
        """Like list_all_file_names, but an accepted directory is not descended into."""
        return self._walk(path, file_filter, recurse=True, exit_branch_on_match=True)

    # -----------------------------
    # Maintenance
    # -----------------------------
    def sweep(self, max_bytes) -> int:
        """Trim the writable root to `max_bytes`, least recently used files first.

        Empty files are always removed.  Read-only roots are never touched.
        Returns the number of files removed.
        """
        if max_bytes is None or max_bytes < 0:
            raise ValueError(f"max_bytes must not be negative, got {max_bytes}")

        with self._sweep_lock:
            files = []
            for dirpath, _, filenames in os.walk(self._write_root):
                for fname in filenames:
                    fpath = os.path.join(dirpath, fname)
                    try:
                        st = os.stat(fpath)
                    except FileNotFoundError:
                        continue
                    files.append((st.st_mtime, st.st_size, fpath, fname))

            removed = 0
            total = 0
            live = []
            stale_temp_age = time.time() - 3600
            for mtime, size, fpath, fname in files:
                # Empty files and abandoned temp files are never worth keeping
                if size == 0 or (_is_temp_name(fname) and mtime < stale_temp_age):
                    if self._unlink_quiet(fpath):
                        removed += 1
                    continue
                if _is_temp_name(fname):
                    continue
                total += size
                live.append((mtime, size, fpath))

            if total > max_bytes:
                log.info(f"FileStore {self._write_root} holds {total // MB} MB, "
                         f"trimming to {max_bytes // MB} MB")
                live.sort()
                for mtime, size, fpath in live:
                    if total <= max_bytes:
                        break
                    if self._unlink_quiet(fpath):
                        removed += 1
                        total -= size

        if removed:
            inc_stat('filestore_swept', removed)
            log.info(f"Swept {removed} files from {self._write_root}")
        return removed

    @staticmethod
    def _unlink_quiet(fpath) -> bool:
        try:
            os.remove(fpath)
            return True
        except FileNotFoundError:
            return False
        except PermissionError as err:
            log.warning(f"Could not remove {fpath}: {err}")
            return False
