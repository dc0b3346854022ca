import time
import unittest
from unittest import mock

from dedupe_fixtures import add_account, add_contact, add_workspace, make_session
from repository.entities_repo import iter_active_entities
from services.candidate_store import resolve_candidate
from services.dedupe_errors import InvalidInput, NotFound
from services.duplicate_detector import create_detection_run, detect, get_detection_run, run_detection, run_to_dict
from shared.db import DuplicateCandidate


class DuplicateDetectorTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.workspace = add_workspace(self.db)
        self.other_workspace = add_workspace(self.db, name="Other")
        self.workspace_id = self.workspace.id
        add_account(self.db, self.workspace, name="Acme Inc", domain="acme.com")
        add_account(self.db, self.workspace, name="ACME Incorporated", domain="acme.com")
        add_account(self.db, self.workspace, name="Globex", domain="globex.com")
        add_account(self.db, self.workspace, name="Acme Archive", domain="acme.com", status="archived")
        add_account(self.db, self.other_workspace, name="Acme Inc", domain="acme.com")
        add_contact(self.db, self.workspace, first_name="Jane", last_name="Doe", email="jane@acme.com")
        add_contact(self.db, self.workspace, first_name="Jane", last_name="Doe", email="JANE@acme.com")
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _pending(self, entity_type=None):
        query = self.db.query(DuplicateCandidate).filter_by(workspace_id=self.workspace_id, status="pending")
        if entity_type:
            query = query.filter_by(entity_type=entity_type)
        return query.all()

    def test_detect_flags_pairs_above_threshold(self):
        summary = detect(self.db, self.workspace_id, "account", 80)

        pending = self._pending("account")
        self.assertEqual(len(pending), 1)
        self.assertEqual(summary.candidates_created, 1)
        self.assertEqual(summary.entities_scanned, 3)
        self.assertEqual(summary.pairs_compared, 3)
        self.assertIn("domain", pending[0].matching_fields)
        self.assertEqual(pending[0].detection_method, "domain_match")
        self.assertLess(pending[0].entity_id_1, pending[0].entity_id_2)

    def test_rerun_is_idempotent(self):
        detect(self.db, self.workspace_id)
        summary = detect(self.db, self.workspace_id)

        self.assertEqual(summary.candidates_created, 0)
        self.assertEqual(summary.candidates_updated, 2)
        self.assertEqual(len(self._pending()), 2)

    def test_pools_are_scanned_separately(self):
        summary = detect(self.db, self.workspace_id, threshold=0)

        # 3 active accounts -> 3 pairs, 2 contacts -> 1 pair; no cross-type pairs.
        self.assertEqual(summary.pools["account"].pairs_compared, 3)
        self.assertEqual(summary.pools["contact"].pairs_compared, 1)
        self.assertEqual(summary.pairs_compared, 4)
        types = {row.entity_type for row in self._pending()}
        self.assertEqual(types, {"account", "contact"})

    def test_dismissed_pair_is_not_reflagged(self):
        detect(self.db, self.workspace_id, "contact")
        candidate = self._pending("contact")[0]
        resolve_candidate(self.db, candidate.id, "not_duplicate", "user-1")
        self.db.commit()

        summary = detect(self.db, self.workspace_id, "contact", rescan_dismissed=False)

        self.assertEqual(summary.candidates_skipped, 1)
        self.assertEqual(self._pending("contact"), [])

    def test_small_batches_cover_every_pair(self):
        summary = detect(self.db, self.workspace_id, "account", 0, batch_size=1)
        self.assertEqual(summary.pairs_compared, 3)
        self.assertEqual(len(self._pending("account")), 3)

    def test_expired_deadline_stops_cleanly(self):
        summary = detect(self.db, self.workspace_id, deadline=time.monotonic() - 1)
        self.assertTrue(summary.timed_out)
        self.assertEqual(self._pending(), [])

    def test_deadline_between_chunks_keeps_committed_candidates(self):
        with mock.patch("services.duplicate_detector._deadline_passed", side_effect=[False, True]):
            summary = detect(self.db, self.workspace_id, "account", 0, batch_size=1, deadline=time.monotonic() + 60)

        self.assertTrue(summary.timed_out)
        self.assertEqual(summary.entities_scanned, 1)
        self.assertEqual(summary.pairs_compared, 2)
        self.db.rollback()
        self.assertEqual(len(self._pending("account")), 2)

    def test_entities_are_streamed_in_id_order_after_a_cursor(self):
        chunks = list(iter_active_entities(self.db, self.workspace_id, "account", batch_size=2))
        ids = [entity["id"] for chunk in chunks for entity in chunk]

        self.assertEqual([len(chunk) for chunk in chunks], [2, 1])
        self.assertEqual(ids, sorted(ids))
        tail = [
            entity["id"]
            for chunk in iter_active_entities(self.db, self.workspace_id, "account", batch_size=2, after_id=ids[0])
            for entity in chunk
        ]
        self.assertEqual(tail, ids[1:])

    def test_invalid_arguments(self):
        with self.assertRaises(InvalidInput):
            detect(self.db, self.workspace_id, threshold=101)
        with self.assertRaises(InvalidInput):
            detect(self.db, self.workspace_id, entity_type="deal")
        with self.assertRaises(InvalidInput):
            detect(self.db, "")


class DetectionRunTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        workspace = add_workspace(self.db)
        add_account(self.db, workspace, name="Acme Inc", domain="acme.com")
        add_account(self.db, workspace, name="Acme", domain="acme.com")
        self.db.commit()
        self.workspace_id = workspace.id

    def tearDown(self):
        self.db.close()

    def test_run_lifecycle(self):
        run = create_detection_run(self.db, self.workspace_id, entity_type="account", threshold=75, triggered_by="u1")
        self.assertEqual(run.status, "queued")

        finished = run_detection(self.db, run.id)

        self.assertEqual(finished.status, "completed")
        self.assertEqual(finished.candidates_created, 1)
        self.assertEqual(finished.entities_scanned, 2)
        self.assertIsNotNone(finished.finished_at)
        self.assertEqual(run_to_dict(finished)["status"], "completed")

    def test_completed_run_is_not_repeated(self):
        run = create_detection_run(self.db, self.workspace_id)
        run_detection(self.db, run.id)

        with mock.patch("services.duplicate_detector.detect") as detect_mock:
            again = run_detection(self.db, run.id)

        detect_mock.assert_not_called()
        self.assertEqual(again.status, "completed")

    def test_failure_is_recorded(self):
        run = create_detection_run(self.db, self.workspace_id)
        with mock.patch("services.duplicate_detector.detect", side_effect=InvalidInput("boom")):
            failed = run_detection(self.db, run.id)

        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.error, "boom")

    def test_unexpected_failure_is_recorded(self):
        run = create_detection_run(self.db, self.workspace_id)
        with mock.patch("services.duplicate_detector.detect", side_effect=KeyError("similarity")):
            failed = run_detection(self.db, run.id)

        self.assertEqual(failed.status, "failed")
        self.assertIn("similarity", failed.error)
        self.assertIsNotNone(failed.finished_at)

    def test_missing_run(self):
        with self.assertRaises(NotFound):
            get_detection_run(self.db, "missing")


if __name__ == "__main__":
    unittest.main()
