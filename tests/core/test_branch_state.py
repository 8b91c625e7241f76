#!/usr/bin/env python3
"""Tests for the persisted branch state store.

Covers: idempotent tracking, one-time authorization consumption, revoke
no-ops, cleanup, document layout (unknown/missing fields, legacy layout),
corrupt files, snapshots, the state lock and writers in separate
processes.
"""
import json
import os
import shutil
import subprocess
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402
from _bootstrap import _SCRIPTS_DIR  # noqa: E402

import branch_state  # noqa: E402
from branch_state import (  # noqa: E402
    BranchEntry,
    BranchStateStore,
    StoreIOError,
    StoreLockTimeout,
    dump_document,
    parse_document,
)

REPO = "/tmp/push-guard-test-repo"


class _StoreTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="pg-state-")
        self.path = Path(self.tmpdir) / "state.json"
        self.store = BranchStateStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write_raw(self, data):
        text = data if isinstance(data, str) else json.dumps(data)
        self.path.write_text(text, encoding="utf-8")


# ============================================================
# 1. Tracking
# ============================================================

class TestTracking(_StoreTestCase):

    def test_untracked_by_default(self):
        self.assertFalse(self.store.is_tracked(REPO, "feature"))

    def test_track(self):
        self.store.track(REPO, "feature")
        self.assertTrue(self.store.is_tracked(REPO, "feature"))
        self.assertFalse(self.store.is_tracked(REPO, "other"))
        self.assertFalse(self.store.is_tracked("/tmp/other-repo", "feature"))

    def test_track_twice_equals_once(self):
        self.store.track(REPO, "feature")
        first = self.path.read_text(encoding="utf-8")
        self.store.track(REPO, "feature")
        self.assertEqual(self.path.read_text(encoding="utf-8"), first)
        self.assertEqual(len(self.store.list()), 1)

    def test_persisted_layout(self):
        self.store.track(REPO, "feature")
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(data, {REPO: {"feature": {"tracked": True, "authorized": False}}})

    def test_state_survives_new_instance(self):
        self.store.track(REPO, "feature")
        self.assertTrue(BranchStateStore(self.path).is_tracked(REPO, "feature"))

    def test_creates_parent_directory(self):
        nested = BranchStateStore(Path(self.tmpdir) / "a" / "b" / "state.json")
        nested.track(REPO, "feature")
        self.assertTrue(nested.is_tracked(REPO, "feature"))


# ============================================================
# 2. One-time Authorization
# ============================================================

class TestAuthorization(_StoreTestCase):

    def test_consume_once(self):
        self.store.authorize(REPO, "hotfix")
        self.assertTrue(self.store.try_consume_authorization(REPO, "hotfix"))
        self.assertFalse(self.store.try_consume_authorization(REPO, "hotfix"))

    def test_consume_without_token(self):
        self.assertFalse(self.store.try_consume_authorization(REPO, "hotfix"))

    def test_authorize_twice_is_still_one_token(self):
        self.store.authorize(REPO, "hotfix")
        self.store.authorize(REPO, "hotfix")
        self.assertTrue(self.store.try_consume_authorization(REPO, "hotfix"))
        self.assertFalse(self.store.try_consume_authorization(REPO, "hotfix"))

    def test_consumption_prunes_empty_record(self):
        self.store.authorize(REPO, "hotfix")
        self.store.try_consume_authorization(REPO, "hotfix")
        self.assertEqual(self.store.list(), [])
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), {})

    def test_consumption_keeps_tracking(self):
        self.store.track(REPO, "feature")
        self.store.authorize(REPO, "feature")
        self.assertTrue(self.store.try_consume_authorization(REPO, "feature"))
        self.assertTrue(self.store.is_tracked(REPO, "feature"))

    def test_revoke(self):
        self.store.authorize(REPO, "hotfix")
        self.assertTrue(self.store.revoke(REPO, "hotfix"))
        self.assertFalse(self.store.try_consume_authorization(REPO, "hotfix"))

    def test_revoke_unknown_creates_nothing(self):
        self.assertFalse(self.store.revoke(REPO, "ghost"))
        self.assertFalse(self.path.exists())

    def test_revoke_keeps_tracking(self):
        self.store.track(REPO, "feature")
        self.assertFalse(self.store.revoke(REPO, "feature"))
        self.assertTrue(self.store.is_tracked(REPO, "feature"))


# ============================================================
# 3. Listing and Cleanup
# ============================================================

class TestListAndClean(_StoreTestCase):

    def test_list_sorted_and_filtered(self):
        self.store.track("/b", "x")
        self.store.track("/a", "z")
        self.store.authorize("/a", "y")
        self.assertEqual(
            self.store.list(),
            [
                BranchEntry("/a", "y", False, True),
                BranchEntry("/a", "z", True, False),
                BranchEntry("/b", "x", True, False),
            ],
        )
        self.assertEqual([e.branch for e in self.store.list("/a")], ["y", "z"])
        self.assertEqual(self.store.list("/nope"), [])

    def test_entry_to_dict(self):
        self.assertEqual(
            BranchEntry("/a", "y", False, True).to_dict(),
            {"repo": "/a", "branch": "y", "tracked": False, "authorized": True},
        )

    def test_clean_repo(self):
        self.store.track(REPO, "a")
        self.store.authorize(REPO, "b")
        self.store.track("/keep", "c")
        self.assertEqual(self.store.clean_repo(REPO), 2)
        self.assertFalse(self.store.is_tracked(REPO, "a"))
        self.assertTrue(self.store.is_tracked("/keep", "c"))
        self.assertEqual(self.store.clean_repo(REPO), 0)

    def test_clean_stale(self):
        self.store.track(self.tmpdir, "live")
        self.store.track("/definitely/does/not/exist/repo-for-test", "feat")
        removed = self.store.clean_stale()
        self.assertEqual(removed, ["/definitely/does/not/exist/repo-for-test"])
        self.assertTrue(self.store.is_tracked(self.tmpdir, "live"))

    def test_clean_stale_custom_predicate(self):
        self.store.track("/a", "x")
        self.store.track("/b", "y")
        self.assertEqual(self.store.clean_stale(exists=lambda repo: repo == "/a"), ["/b"])
        self.assertEqual(self.store.clean_stale(exists=lambda repo: True), [])


# ============================================================
# 4. Document Parsing
# ============================================================

class TestDocumentParsing(_StoreTestCase):

    def test_missing_file_is_empty(self):
        self.assertEqual(self.store.load(), {})

    def test_empty_file_is_empty(self):
        self.write_raw("")
        self.assertEqual(self.store.list(), [])

    def test_unknown_fields_ignored(self):
        self.write_raw({REPO: {"feature": {"tracked": True, "note": "hi"}}, })
        self.assertTrue(self.store.is_tracked(REPO, "feature"))

    def test_missing_fields_default_false(self):
        self.write_raw({REPO: {"hotfix": {"authorized": True}}})
        self.assertFalse(self.store.is_tracked(REPO, "hotfix"))
        self.assertTrue(self.store.try_consume_authorization(REPO, "hotfix"))

    def test_legacy_layout_migrates(self):
        self.write_raw({"tracked": {REPO: ["feature"]}, "authorized": {REPO: ["hotfix"]}})
        self.assertTrue(self.store.is_tracked(REPO, "feature"))
        self.assertEqual(
            self.store.list(),
            [BranchEntry(REPO, "feature", True, False), BranchEntry(REPO, "hotfix", False, True)],
        )

    def test_legacy_layout_rewritten_on_next_write(self):
        self.write_raw({"tracked": {REPO: ["feature"]}, "authorized": {}})
        self.store.track(REPO, "second")
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(set(data), {REPO})
        self.assertTrue(data[REPO]["feature"]["tracked"])

    def test_corrupt_json_raises(self):
        self.write_raw("{not json")
        with self.assertRaises(StoreIOError):
            self.store.is_tracked(REPO, "feature")

    def test_corrupt_file_not_overwritten(self):
        self.write_raw("{not json")
        with self.assertRaises(StoreIOError):
            self.store.track(REPO, "feature")
        self.assertEqual(self.path.read_text(encoding="utf-8"), "{not json")

    def test_invalid_layout_raises(self):
        for data in ([1, 2], {REPO: ["feature"]}, {REPO: {"feature": 5}}):
            with self.subTest(data=data):
                with self.assertRaises(StoreIOError):
                    parse_document(json.dumps(data))

    def test_dump_is_sorted_and_round_trips(self):
        document = parse_document(json.dumps({"/b": {"x": {"tracked": True}}, "/a": {"y": {"authorized": True}}}))
        text = dump_document(document)
        self.assertTrue(text.endswith("\n"))
        self.assertLess(text.index('"/a"'), text.index('"/b"'))
        self.assertEqual(parse_document(text), document)


# ============================================================
# 5. Snapshots
# ============================================================

class TestSnapshot(_StoreTestCase):

    def test_snapshot_never_writes(self):
        self.store.authorize(REPO, "hotfix")
        before = self.path.read_text(encoding="utf-8")
        snap = self.store.snapshot()
        self.assertTrue(snap.try_consume_authorization(REPO, "hotfix"))
        self.assertFalse(snap.try_consume_authorization(REPO, "hotfix"))
        snap.track(REPO, "feature")
        self.assertTrue(snap.is_tracked(REPO, "feature"))
        self.assertEqual(self.path.read_text(encoding="utf-8"), before)
        self.assertTrue(self.store.try_consume_authorization(REPO, "hotfix"))
        self.assertFalse(self.store.is_tracked(REPO, "feature"))


# ============================================================
# 6. Locking
# ============================================================

class TestStateLock(_StoreTestCase):

    def _lock_dir(self):
        return Path(self.tmpdir) / ".state.json.lockdir"

    def test_lock_released_after_write(self):
        self.store.track(REPO, "feature")
        self.assertFalse(self._lock_dir().exists())

    def test_held_lock_times_out(self):
        os.mkdir(self._lock_dir())
        with mock.patch.object(branch_state._state_lock, "_LOCK_TIMEOUT", 0.2):
            with self.assertRaises(StoreLockTimeout):
                self.store.track(REPO, "feature")
        self.assertFalse(self.path.exists())

    def test_lock_timeout_is_store_error(self):
        self.assertTrue(issubclass(StoreLockTimeout, StoreIOError))

    def test_stale_lock_is_broken(self):
        lock_dir = self._lock_dir()
        os.mkdir(lock_dir)
        old = time.time() - 120
        os.utime(lock_dir, (old, old))
        self.store.track(REPO, "feature")
        self.assertTrue(self.store.is_tracked(REPO, "feature"))

    def test_no_temp_files_left_behind(self):
        self.store.track(REPO, "feature")
        self.store.authorize(REPO, "hotfix")
        leftovers = [p.name for p in Path(self.tmpdir).iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])

    def _aged(self, path, seconds=120):
        old = time.time() - seconds
        os.utime(path, (old, old))

    def test_fresh_lock_survives_break_attempt(self):
        # A waiter that saw a stale lock must not remove the fresh one
        # another waiter has taken since
        os.mkdir(self._lock_dir())
        lock = branch_state._state_lock(self.path)
        self.assertFalse(lock._break_stale_lock())
        self.assertTrue(self._lock_dir().exists())

    def test_break_waits_for_other_breaker(self):
        os.mkdir(self._lock_dir())
        self._aged(self._lock_dir())
        lock = branch_state._state_lock(self.path)
        os.mkdir(lock.break_dir)
        self.assertFalse(lock._break_stale_lock())
        self.assertTrue(self._lock_dir().exists())

    def test_break_removes_stale_lock_and_releases(self):
        os.mkdir(self._lock_dir())
        self._aged(self._lock_dir())
        lock = branch_state._state_lock(self.path)
        self.assertTrue(lock._break_stale_lock())
        self.assertFalse(self._lock_dir().exists())
        self.assertFalse(lock.break_dir.exists())

    def test_abandoned_breaker_is_cleared(self):
        lock = branch_state._state_lock(self.path)
        os.mkdir(lock.break_dir)
        self._aged(lock.break_dir)
        os.mkdir(self._lock_dir())
        self._aged(self._lock_dir())
        self.store.track(REPO, "feature")
        self.assertTrue(self.store.is_tracked(REPO, "feature"))


# ============================================================
# 7. Concurrent Processes
# ============================================================

# argv: scripts dir, state file, action, repo, branch...
_WORKER = (
    "import sys\n"
    "sys.path.insert(0, sys.argv[1])\n"
    "from branch_state import BranchStateStore\n"
    "store = BranchStateStore(sys.argv[2])\n"
    "if sys.argv[3] == 'track':\n"
    "    for branch in sys.argv[5:]:\n"
    "        store.track(sys.argv[4], branch)\n"
    "else:\n"
    "    print(store.try_consume_authorization(sys.argv[4], sys.argv[5]))\n"
)


class TestConcurrentProcesses(_StoreTestCase):

    def _spawn(self, *args):
        env = dict(os.environ)
        env["PUSH_GUARD_STATE_FILE"] = str(self.path)
        return subprocess.Popen(
            [sys.executable, "-c", _WORKER, _SCRIPTS_DIR, str(self.path), *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )

    def _wait_all(self, procs):
        outputs = []
        for proc in procs:
            out, err = proc.communicate(timeout=60)
            self.assertEqual(proc.returncode, 0, err)
            outputs.append(out.strip())
        return outputs

    def test_concurrent_tracks_are_all_kept(self):
        workers, per_worker = 8, 5
        expected = {f"w{n}-b{k}" for n in range(workers) for k in range(per_worker)}
        procs = [
            self._spawn("track", REPO, *(f"w{n}-b{k}" for k in range(per_worker)))
            for n in range(workers)
        ]
        self._wait_all(procs)
        branches = {entry.branch for entry in self.store.list(REPO)}
        self.assertEqual(branches, expected)

    def test_single_token_consumed_once(self):
        self.store.authorize(REPO, "hotfix")
        procs = [self._spawn("consume", REPO, "hotfix") for _ in range(4)]
        outputs = self._wait_all(procs)
        self.assertEqual(sorted(outputs), ["False", "False", "False", "True"])
        self.assertEqual(self.store.list(REPO), [])


if __name__ == "__main__":
    unittest.main()
