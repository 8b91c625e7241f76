#!/usr/bin/env python3
"""Branch State Store - persisted tracked/authorized flags per (repo, branch).

Document layout (one JSON file per user):

    {
      "/abs/repo": {
        "feature": {"tracked": true, "authorized": false}
      }
    }

Every mutating call is a locked read-modify-write of the whole document.
Writes go through a temp file + os.replace, so a reader never observes a
partial document. Unknown fields are ignored; missing fields default to
false.

An authorization is a one-time token: the decision engine can only consult
it through try_consume_authorization(), which removes it.
"""

import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from _push_guard_utils import get_state_path, log_push_guard


class StoreIOError(Exception):
    """The state file could not be read, parsed, locked or written."""


class StoreLockTimeout(StoreIOError):
    """Another process held the state lock for too long."""


# ---------------------------------------------------------------------------
# Document models
# ---------------------------------------------------------------------------

class BranchRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    tracked: bool = False
    authorized: bool = False

    def is_empty(self) -> bool:
        return not (self.tracked or self.authorized)


StateDocument = dict[str, dict[str, BranchRecord]]
_DOCUMENT_ADAPTER = TypeAdapter(StateDocument)


@dataclass(frozen=True)
class BranchEntry:
    repo: str
    branch: str
    tracked: bool
    authorized: bool

    def to_dict(self) -> dict:
        return {
            "repo": self.repo,
            "branch": self.branch,
            "tracked": self.tracked,
            "authorized": self.authorized,
        }


def _is_legacy_layout(data: dict) -> bool:
    """Detect {"tracked": {repo: [branch]}, "authorized": {repo: [branch]}}."""
    if not data or not set(data) <= {"tracked", "authorized"}:
        return False
    for section in data.values():
        if not isinstance(section, dict):
            return False
        if not all(isinstance(branches, list) for branches in section.values()):
            return False
    return True


def _migrate_legacy(data: dict) -> dict:
    migrated: dict[str, dict[str, dict]] = {}
    for flag in ("tracked", "authorized"):
        for repo, branches in data.get(flag, {}).items():
            for branch in branches:
                if not isinstance(branch, str):
                    continue
                record = migrated.setdefault(repo, {}).setdefault(branch, {})
                record[flag] = True
    return migrated


def parse_document(text: str) -> StateDocument:
    """Parse state file text into a validated document.

    Raises:
        StoreIOError: invalid JSON or schema.
    """
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StoreIOError(f"State file is not valid JSON: {e}") from e
    if isinstance(data, dict) and _is_legacy_layout(data):
        data = _migrate_legacy(data)
    try:
        document = _DOCUMENT_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise StoreIOError(f"State file has an invalid layout: {e.error_count()} error(s)") from e
    # Drop records that carry no state (written by hand or by an older version)
    return {
        repo: {branch: rec for branch, rec in branches.items() if not rec.is_empty()}
        for repo, branches in document.items()
        if any(not rec.is_empty() for rec in branches.values())
    }


def dump_document(document: StateDocument) -> str:
    plain = {
        repo: {branch: rec.model_dump() for branch, rec in sorted(branches.items())}
        for repo, branches in sorted(document.items())
    }
    return json.dumps(plain, indent=2, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Locking / atomic writes
# ---------------------------------------------------------------------------

class _state_lock:
    """Exclusive lock for a read-modify-write cycle. Uses mkdir (atomic on all FS including NFS).

    Unlike a best-effort lock, a timeout here raises: proceeding unlocked
    could drop another process's consumption of a one-time token.
    """

    _LOCK_TIMEOUT = 5.0    # Max seconds to wait for lock
    _STALE_AGE = 60.0      # Seconds before a lock is considered stale
    _POLL_INTERVAL = 0.05  # Seconds between retry attempts

    def __init__(self, state_path: Path):
        self.lock_dir = state_path.parent / f".{state_path.name}.lockdir"
        # Only the holder of break_dir may remove a stale lock_dir
        self.break_dir = state_path.parent / f".{state_path.name}.lockdir.break"
        self.acquired = False

    def _is_stale(self, path: Path) -> bool:
        return (time.time() - path.stat().st_mtime) > self._STALE_AGE

    def _break_stale_lock(self) -> bool:
        """Remove lock_dir if it is still stale. Returns True if removed.

        Waiters that all saw the same stale lock serialize on break_dir and
        re-check under it, so a fresh lock taken by the first breaker is
        never removed by the others.
        """
        try:
            os.mkdir(self.break_dir)
        except FileExistsError:
            try:
                if self._is_stale(self.break_dir):
                    # Breaker died mid-break
                    os.rmdir(self.break_dir)
            except OSError:
                pass
            return False
        try:
            if not self._is_stale(self.lock_dir):
                return False
            os.rmdir(self.lock_dir)
            return True
        except OSError:
            return False
        finally:
            try:
                os.rmdir(self.break_dir)
            except OSError:
                pass

    def __enter__(self):
        try:
            self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"Cannot create state directory {self.lock_dir.parent}: {e}") from e

        deadline = time.monotonic() + self._LOCK_TIMEOUT
        while True:
            try:
                os.mkdir(self.lock_dir)
                self.acquired = True
                return self
            except FileExistsError:
                try:
                    stale = self._is_stale(self.lock_dir)
                except OSError:
                    stale = False  # Lock dir disappeared between mkdir and stat -- retry
                if stale and self._break_stale_lock():
                    log_push_guard("WARN", "Broke stale state lock (older than 60s)")
                    continue

                if time.monotonic() >= deadline:
                    raise StoreLockTimeout(f"Timed out waiting for state lock {self.lock_dir}")
                time.sleep(self._POLL_INTERVAL)
            except OSError as e:
                raise StoreIOError(f"Cannot create state lock {self.lock_dir}: {e}") from e

    def __exit__(self, *args):
        if self.acquired:
            try:
                os.rmdir(self.lock_dir)
            except OSError:
                pass
            self.acquired = False


def atomic_write_text(target: Path, content: str) -> None:
    """Write text atomically via unique tmp + rename."""
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".tmp", prefix=".pg-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class BranchStateStore:
    """Narrow mutation API over the persisted state document.

    Repository arguments are expected to be canonical paths
    (see _push_guard_utils.canonical_repo).
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else get_state_path()

    # -- persistence -------------------------------------------------------

    def _read(self) -> StateDocument:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreIOError(f"Failed to read state from {self.path}: {e}") from e
        return parse_document(text)

    def _write(self, document: StateDocument) -> None:
        try:
            atomic_write_text(self.path, dump_document(document))
        except OSError as e:
            raise StoreIOError(f"Failed to write state to {self.path}: {e}") from e

    @contextmanager
    def _transaction(self):
        """Locked read-modify-write.

        Yields a _Transaction; the document is written back only when the
        block sets `txn.dirty`.
        """
        with _state_lock(self.path):
            txn = _Transaction(self._read())
            yield txn
            if txn.dirty:
                self._write(txn.document)

    def load(self) -> StateDocument:
        """Read the current document (no lock needed: writes are atomic)."""
        return self._read()

    # -- queries -----------------------------------------------------------

    def is_tracked(self, repo: str, branch: str) -> bool:
        record = self.load().get(repo, {}).get(branch)
        return bool(record and record.tracked)

    # -- mutations ---------------------------------------------------------

    def track(self, repo: str, branch: str) -> None:
        with self._transaction() as txn:
            record = txn.record(repo, branch)
            if not record.tracked:
                record.tracked = True
                txn.dirty = True

    def authorize(self, repo: str, branch: str) -> None:
        with self._transaction() as txn:
            txn.record(repo, branch).authorized = True
            txn.dirty = True

    def revoke(self, repo: str, branch: str) -> bool:
        """Remove the token for (repo, branch). Returns whether one existed."""
        with self._transaction() as txn:
            record = txn.existing(repo, branch)
            if record is None or not record.authorized:
                return False
            record.authorized = False
            txn.prune(repo, branch)
            txn.dirty = True
            return True

    def try_consume_authorization(self, repo: str, branch: str) -> bool:
        """Atomically remove the token for (repo, branch) if present."""
        with self._transaction() as txn:
            record = txn.existing(repo, branch)
            if record is None or not record.authorized:
                return False
            record.authorized = False
            txn.prune(repo, branch)
            txn.dirty = True
            return True

    def clean_repo(self, repo: str) -> int:
        """Delete all records for a repository. Returns the number removed."""
        with self._transaction() as txn:
            removed = txn.document.pop(repo, None)
            if removed is None:
                return 0
            txn.dirty = True
            return len(removed)

    def clean_stale(self, exists=os.path.isdir) -> list[str]:
        """Delete records of repositories for which `exists(repo)` is false."""
        with self._transaction() as txn:
            stale = sorted(repo for repo in txn.document if not exists(repo))
            for repo in stale:
                del txn.document[repo]
            if stale:
                txn.dirty = True
            return stale

    def snapshot(self) -> "SnapshotStore":
        """In-memory copy for dry runs: same API, never writes."""
        return SnapshotStore(self.path, self.load())

    # Defined last: the name shadows the builtin inside the class body.
    def list(self, repo: str | None = None) -> "list[BranchEntry]":
        """Enumerate records, optionally for one repository, sorted by repo then branch."""
        document = self.load()
        entries = []
        for repo_path in sorted(document):
            if repo is not None and repo_path != repo:
                continue
            for branch, record in sorted(document[repo_path].items()):
                entries.append(BranchEntry(repo_path, branch, record.tracked, record.authorized))
        return entries


class _Transaction:
    def __init__(self, document: StateDocument):
        self.document = document
        self.dirty = False

    def record(self, repo: str, branch: str) -> BranchRecord:
        return self.document.setdefault(repo, {}).setdefault(branch, BranchRecord())

    def existing(self, repo: str, branch: str) -> BranchRecord | None:
        return self.document.get(repo, {}).get(branch)

    def prune(self, repo: str, branch: str) -> None:
        branches = self.document.get(repo, {})
        record = branches.get(branch)
        if record is not None and record.is_empty():
            del branches[branch]
        if repo in self.document and not branches:
            del self.document[repo]


class SnapshotStore(BranchStateStore):
    """A BranchStateStore that keeps its document in memory."""

    def __init__(self, path: Path, document: StateDocument):
        super().__init__(path)
        self._document = {
            repo: {branch: rec.model_copy() for branch, rec in branches.items()}
            for repo, branches in document.items()
        }

    def _read(self) -> StateDocument:
        return self._document

    def _write(self, document: StateDocument) -> None:
        self._document = document

    @contextmanager
    def _transaction(self):
        txn = _Transaction(self._document)
        yield txn
        if txn.dirty:
            self._write(txn.document)
