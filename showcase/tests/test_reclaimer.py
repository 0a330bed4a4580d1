import os
import random
import tempfile
import threading
import unittest
from datetime import timedelta

from showcase.db import Database, InMemoryDatabase
from showcase.ledger import InMemoryReferenceLedger, SqlReferenceLedger
from showcase.media_urls import new_blob_id
from showcase.reclaimer import OrphanReclaimer
from showcase.storage import InMemoryBlobStore, SqlBlobStore
from showcase.types import OwnerFieldKind

POSTER = OwnerFieldKind.PROJECT_POSTER


class FlakyBlobStore(InMemoryBlobStore):
    """Fails conditional deletes for selected blobs."""

    def __init__(self, database, failing=()):
        super().__init__(database)
        self.failing = set(failing)

    def delete_if_unreferenced(self, blob_id):
        if blob_id in self.failing:
            raise RuntimeError("storage unavailable")
        return super().delete_if_unreferenced(blob_id)


class ReclaimTests(unittest.TestCase):
    def setUp(self):
        self.database = InMemoryDatabase()
        self.store = InMemoryBlobStore(self.database)
        self.ledger = InMemoryReferenceLedger(self.database)
        self.reclaimer = OrphanReclaimer(self.store, self.ledger)

    def test_unreferenced_blob_is_deleted(self):
        blob_id = self.store.upload(b"x", "x.png")
        self.assertTrue(self.reclaimer.reclaim_if_orphaned(blob_id))
        self.assertFalse(self.store.exists(blob_id))

    def test_referenced_blob_is_kept(self):
        blob_id = self.store.upload(b"x", "x.png")
        self.ledger.add_reference(blob_id, "p1", POSTER)
        self.assertFalse(self.reclaimer.reclaim_if_orphaned(blob_id))
        self.assertTrue(self.store.exists(blob_id))

    def test_missing_blob_is_not_an_error(self):
        blob_id = self.store.upload(b"x", "x.png")
        self.assertTrue(self.reclaimer.reclaim_if_orphaned(blob_id))
        self.assertFalse(self.reclaimer.reclaim_if_orphaned(blob_id))
        self.assertFalse(self.reclaimer.reclaim_if_orphaned(new_blob_id()))

    def test_concurrent_reclaims_delete_exactly_once(self):
        for _ in range(20):
            blob_id = self.store.upload(b"x", "x.bin")
            barrier = threading.Barrier(8)
            results = []

            def reclaim():
                barrier.wait()
                results.append(self.reclaimer.reclaim_if_orphaned(blob_id))

            threads = [threading.Thread(target=reclaim) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            self.assertEqual(results.count(True), 1)
            self.assertFalse(self.store.exists(blob_id))

    def test_reclaim_racing_a_new_reference_never_loses_a_referenced_blob(self):
        rng = random.Random(7)
        for _ in range(50):
            blob_id = self.store.upload(b"x", "x.bin")
            barrier = threading.Barrier(2)
            outcome = {}

            def add():
                barrier.wait()
                if rng.random() < 0.5:
                    threading.Event().wait(0.0005)
                self.ledger.add_reference(blob_id, "p1", POSTER)

            def reclaim():
                barrier.wait()
                outcome["deleted"] = self.reclaimer.reclaim_if_orphaned(blob_id)

            threads = [threading.Thread(target=add), threading.Thread(target=reclaim)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            exists = self.store.exists(blob_id)
            self.assertEqual(outcome["deleted"], not exists)
            if exists:
                self.assertTrue(self.ledger.has_any_reference(blob_id))


class SweepTests(unittest.TestCase):
    def setUp(self):
        self.database = InMemoryDatabase()
        self.store = InMemoryBlobStore(self.database)
        self.ledger = InMemoryReferenceLedger(self.database)
        self.reclaimer = OrphanReclaimer(self.store, self.ledger)

    def test_sweep_deletes_orphans_and_keeps_referenced(self):
        referenced = self.store.upload(b"a", "a.png")
        orphan = self.store.upload(b"b", "b.png")
        self.ledger.add_reference(referenced, "p1", POSTER)

        report = self.reclaimer.sweep()
        self.assertEqual(report.blobs_scanned, 2)
        self.assertEqual(report.blobs_deleted, 1)
        self.assertEqual(report.orphan_ids, [orphan])
        self.assertEqual(report.errors, [])
        self.assertTrue(self.store.exists(referenced))
        self.assertFalse(self.store.exists(orphan))

    def test_recent_uploads_survive_the_grace_period(self):
        fresh = self.store.upload(b"a", "a.png")
        report = self.reclaimer.sweep(older_than=timedelta(hours=1))
        self.assertEqual(report.blobs_scanned, 0)
        self.assertTrue(self.store.exists(fresh))

    def test_stale_references_are_removed(self):
        gone = new_blob_id()
        self.ledger.add_reference(gone, "p1", POSTER)

        report = self.reclaimer.sweep()
        self.assertEqual(report.references_removed, 1)
        self.assertEqual([entry.blob_id for entry in report.stale_references], [gone])
        self.assertFalse(self.ledger.has_any_reference(gone))

    def test_dry_run_changes_nothing(self):
        orphan = self.store.upload(b"b", "b.png")
        gone = new_blob_id()
        self.ledger.add_reference(gone, "p1", POSTER)

        report = self.reclaimer.sweep(dry_run=True)
        self.assertTrue(report.dry_run)
        self.assertEqual(report.orphan_ids, [orphan])
        self.assertEqual(report.blobs_deleted, 0)
        self.assertEqual(report.references_removed, 0)
        self.assertEqual(len(report.stale_references), 1)
        self.assertTrue(self.store.exists(orphan))
        self.assertTrue(self.ledger.has_any_reference(gone))

    def test_sweep_converges(self):
        for index in range(5):
            self.store.upload(b"x", f"{index}.png")
        self.ledger.add_reference(new_blob_id(), "u1", OwnerFieldKind.USER_AVATAR)

        first = self.reclaimer.sweep()
        second = self.reclaimer.sweep()
        self.assertEqual(first.blobs_deleted, 5)
        self.assertEqual(first.references_removed, 1)
        self.assertEqual(second.blobs_deleted, 0)
        self.assertEqual(second.references_removed, 0)
        self.assertEqual(self.store.list_ids(), set())

    def test_one_failure_does_not_stop_the_sweep(self):
        good = self.store.upload(b"a", "a.png")
        bad = self.store.upload(b"b", "b.png")
        reclaimer = OrphanReclaimer(FlakyBlobStore(self.database, failing={bad}), self.ledger)

        report = reclaimer.sweep()
        self.assertEqual(report.blobs_deleted, 1)
        self.assertEqual(len(report.errors), 1)
        self.assertIn(bad, report.errors[0])
        self.assertFalse(self.store.exists(good))
        self.assertTrue(self.store.exists(bad))

    def test_report_as_dict(self):
        self.store.upload(b"a", "a.png")
        payload = self.reclaimer.sweep(dry_run=True).as_dict()
        self.assertEqual(payload["blobs_scanned"], 1)
        self.assertTrue(payload["dry_run"])


class SqlSweepTests(unittest.TestCase):
    def setUp(self):
        database = Database("sqlite+pysqlite:///:memory:")
        self.store = SqlBlobStore(database)
        self.ledger = SqlReferenceLedger(database)
        self.reclaimer = OrphanReclaimer(self.store, self.ledger)

    def test_sweep_against_sql_backends(self):
        kept = self.store.upload(b"a", "a.png")
        orphan = self.store.upload(b"b", "b.png")
        self.ledger.add_reference(kept, "p1", POSTER)
        self.ledger.add_reference(new_blob_id(), "p1", POSTER)

        report = self.reclaimer.sweep()
        self.assertEqual(report.orphan_ids, [orphan])
        self.assertEqual(report.references_removed, 1)
        self.assertEqual(self.store.list_ids(), {kept})
        self.assertEqual(self.ledger.list_blob_ids(), {kept})


def _run_together(*targets):
    threads = [threading.Thread(target=target) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class SqlReclaimRaceTests(unittest.TestCase):
    """
    Runs the reclaim interleavings against a file-backed SQLite database so
    that every thread holds its own connection and the conditional delete is
    the only thing keeping a referenced blob alive.
    """

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "media.db")
        self.database = Database(
            f"sqlite+pysqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self.store = SqlBlobStore(self.database)
        self.ledger = SqlReferenceLedger(self.database)
        self.reclaimer = OrphanReclaimer(self.store, self.ledger)

    def tearDown(self):
        self.database.dispose()
        self.tmpdir.cleanup()

    def test_concurrent_reclaims_delete_exactly_once(self):
        for _ in range(10):
            blob_id = self.store.upload(b"x", "x.bin")
            barrier = threading.Barrier(4)
            results = []

            def reclaim():
                barrier.wait()
                results.append(self.reclaimer.reclaim_if_orphaned(blob_id))

            _run_together(*[reclaim] * 4)
            self.assertEqual(results.count(True), 1)
            self.assertFalse(self.store.exists(blob_id))

    def test_reclaim_racing_a_new_reference_never_loses_a_referenced_blob(self):
        rng = random.Random(11)
        for _ in range(25):
            blob_id = self.store.upload(b"x", "x.bin")
            barrier = threading.Barrier(2)
            delay = rng.random() * 0.002
            outcome = {}

            def add():
                barrier.wait()
                threading.Event().wait(delay)
                self.ledger.add_reference(blob_id, "p1", POSTER)

            def reclaim():
                barrier.wait()
                outcome["deleted"] = self.reclaimer.reclaim_if_orphaned(blob_id)

            _run_together(add, reclaim)

            exists = self.store.exists(blob_id)
            self.assertEqual(outcome["deleted"], not exists)
            if exists:
                self.assertTrue(self.ledger.has_any_reference(blob_id))


if __name__ == "__main__":
    unittest.main()
