import unittest
from unittest import mock

from services import candidate_store
from services.candidate_store import (
    canonical_pair,
    candidate_to_dict,
    get_candidate,
    get_duplicate_stats,
    list_candidates,
    mark_merged,
    resolve_candidate,
    upsert_candidate,
)
from services.dedupe_errors import InvalidInput, InvalidPair, InvalidState, NotFound
from shared.db import DuplicateCandidate
from dedupe_fixtures import add_workspace, make_session


def _payload(workspace_id, id1, id2, score=85.0, **extra):
    payload = {
        "workspace_id": workspace_id,
        "entity_type": "account",
        "entity_id_1": id1,
        "entity_id_2": id2,
        "similarity_score": score,
        "matching_fields": ["domain"],
        "field_similarities": {"domain_score": 100},
        "detection_method": "domain_match",
    }
    payload.update(extra)
    return payload


class CanonicalPairTests(unittest.TestCase):
    def test_pair_is_sorted(self):
        self.assertEqual(canonical_pair("b", "a"), ("a", "b"))
        self.assertEqual(canonical_pair("a", "b"), ("a", "b"))

    def test_self_pair_rejected(self):
        with self.assertRaises(InvalidInput):
            canonical_pair("a", "a")

    def test_missing_id_rejected(self):
        with self.assertRaises(InvalidInput):
            canonical_pair("a", None)


class CandidateStoreTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.workspace = add_workspace(self.db)
        self.other_workspace = add_workspace(self.db, name="Other")
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_upsert_creates_then_updates_same_unordered_pair(self):
        created_row, created = upsert_candidate(self.db, _payload(self.workspace.id, "b", "a", 82.0))
        self.db.commit()
        self.assertTrue(created)
        self.assertEqual((created_row.entity_id_1, created_row.entity_id_2), ("a", "b"))

        updated_row, created_again = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 91.5))
        self.db.commit()

        self.assertFalse(created_again)
        self.assertEqual(updated_row.id, created_row.id)
        self.assertEqual(updated_row.similarity_score, 91.5)
        self.assertEqual(self.db.query(DuplicateCandidate).count(), 1)

    def test_concurrent_insert_of_same_pair_is_refreshed(self):
        existing, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 81.0))
        self.db.commit()
        existing_id = existing.id
        real_find_pair = candidate_store._find_pair
        calls = []

        def find_pair_missing_first_time(db, values, statuses=None):
            calls.append(statuses)
            if len(calls) == 1:
                # Another worker inserted the pair after this lookup.
                return []
            return real_find_pair(db, values, statuses)

        with mock.patch("services.candidate_store._find_pair", side_effect=find_pair_missing_first_time):
            row, created = upsert_candidate(self.db, _payload(self.workspace.id, "b", "a", 93.0))
        self.db.commit()

        self.assertFalse(created)
        self.assertEqual(row.id, existing_id)
        self.assertEqual(calls, [None, ("pending",)])
        rows = self.db.query(DuplicateCandidate).filter_by(workspace_id=self.workspace.id).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].similarity_score, 93.0)

    def test_upsert_rejects_bad_payload(self):
        with self.assertRaises(InvalidInput):
            upsert_candidate(self.db, _payload(self.workspace.id, "a", "a"))
        with self.assertRaises(InvalidInput):
            upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 120))
        with self.assertRaises(InvalidInput):
            upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", entity_type="deal"))

    def test_resolved_pair_is_not_reset_to_pending(self):
        row, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        self.db.commit()
        resolve_candidate(self.db, row.id, "not_duplicate", "user-1")
        self.db.commit()

        skipped, created = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 95.0))

        self.assertIsNone(skipped)
        self.assertFalse(created)
        self.assertEqual(get_candidate(self.db, row.id).status, "not_duplicate")

    def test_dismissed_pair_reflagged_when_rescan_enabled(self):
        row, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        self.db.commit()
        resolve_candidate(self.db, row.id, "ignored", "user-1")
        self.db.commit()

        fresh, created = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"), rescan_dismissed=True)
        self.db.commit()

        self.assertTrue(created)
        self.assertNotEqual(fresh.id, row.id)
        self.assertEqual(fresh.status, "pending")

    def test_merged_pair_never_reflagged(self):
        row, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        self.db.commit()
        mark_merged(self.db, row.id, "a", "user-1")
        self.db.commit()

        skipped, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"), rescan_dismissed=True)
        self.assertIsNone(skipped)

    def test_same_pair_in_other_workspace_is_separate(self):
        upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        upsert_candidate(self.db, _payload(self.other_workspace.id, "a", "b"))
        self.db.commit()

        rows, total = list_candidates(self.db, self.workspace.id)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0].workspace_id, self.workspace.id)

    def test_list_filters_and_orders_by_score(self):
        upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 81))
        upsert_candidate(self.db, _payload(self.workspace.id, "c", "d", 97))
        upsert_candidate(self.db, _payload(self.workspace.id, "e", "f", 88, entity_type="contact", detection_method="email_match"))
        self.db.commit()

        rows, total = list_candidates(self.db, self.workspace.id)
        self.assertEqual(total, 3)
        self.assertEqual([row.similarity_score for row in rows], [97, 88, 81])

        rows, total = list_candidates(self.db, self.workspace.id, entity_type="account", min_score=85)
        self.assertEqual(total, 1)
        self.assertEqual(rows[0].entity_id_1, "c")

        rows, total = list_candidates(self.db, self.workspace.id, limit=1, offset=1)
        self.assertEqual(total, 3)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].similarity_score, 88)

    def test_resolve_rules(self):
        row, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        self.db.commit()

        with self.assertRaises(InvalidInput):
            resolve_candidate(self.db, row.id, "merged", "user-1")

        resolved = resolve_candidate(self.db, row.id, "ignored", "user-1")
        self.db.commit()
        self.assertEqual(resolved.status, "ignored")
        self.assertEqual(resolved.resolved_by, "user-1")
        self.assertIsNotNone(resolved.resolved_at)

        with self.assertRaises(InvalidState):
            resolve_candidate(self.db, row.id, "not_duplicate", "user-2")

        with self.assertRaises(NotFound):
            resolve_candidate(self.db, "missing", "ignored", "user-1")

    def test_mark_merged_requires_member_of_pair(self):
        row, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b"))
        self.db.commit()

        with self.assertRaises(InvalidPair):
            mark_merged(self.db, row.id, "z", "user-1")

        merged = mark_merged(self.db, row.id, "b", "user-1")
        self.db.commit()
        self.assertEqual(merged.status, "merged")
        self.assertEqual(merged.merged_into, "b")
        self.assertEqual(candidate_to_dict(merged)["merged_into"], "b")

    def test_stats(self):
        first, _ = upsert_candidate(self.db, _payload(self.workspace.id, "a", "b", 80))
        second, _ = upsert_candidate(self.db, _payload(self.workspace.id, "c", "d", 90))
        upsert_candidate(self.db, _payload(self.workspace.id, "e", "f", 100))
        self.db.commit()
        resolve_candidate(self.db, first.id, "not_duplicate", "user-1")
        mark_merged(self.db, second.id, "c", "user-1")
        self.db.commit()

        stats = get_duplicate_stats(self.db, self.workspace.id)

        self.assertEqual(stats["pending_count"], 1)
        self.assertEqual(stats["merged_count"], 1)
        self.assertEqual(stats["not_duplicate_count"], 1)
        self.assertEqual(stats["ignored_count"], 0)
        self.assertEqual(stats["total_detected"], 3)
        self.assertEqual(stats["avg_similarity_score"], 90)
        self.assertEqual(stats["highest_similarity"], 100)

    def test_stats_for_empty_workspace(self):
        stats = get_duplicate_stats(self.db, self.other_workspace.id, "contact")
        self.assertEqual(stats["total_detected"], 0)
        self.assertEqual(stats["avg_similarity_score"], 0)


if __name__ == "__main__":
    unittest.main()
