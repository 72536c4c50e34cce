from __future__ import annotations

import threading
import time
import unittest
from datetime import datetime, timedelta, timezone

from flextime.errors import UnmappedActionCode
from flextime.models import CanonicalAction, PunchOutcome, PunchSource
from flextime.services.dedup import ExistingPunch, KeyedLocks, decide_merge
from flextime.services.normalizer import map_action_code, normalize_punch
from flextime.services.policy import DEFAULT_POLICY, PolicySnapshot, parse_source_priority

NINE_AM = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


def _punch(source: PunchSource, minutes: int = 0, code: str = "CHECK_IN"):  # type: ignore[no-untyped-def]
    return normalize_punch(
        employee_id=1,
        ts_utc=NINE_AM + timedelta(minutes=minutes),
        source=source,
        raw_action_code=code,
    )


def _existing(source: PunchSource, minutes: int = 0, record_type: str = "canonical") -> ExistingPunch:
    return ExistingPunch(
        ts_utc=NINE_AM + timedelta(minutes=minutes),
        source=source,
        record_type=record_type,  # type: ignore[arg-type]
        record_id=7,
    )


class NormalizerTests(unittest.TestCase):
    def test_terminal_alarm_panel_codes(self) -> None:
        self.assertEqual(map_action_code(PunchSource.TERMINAL, "release"), CanonicalAction.CHECK_IN)
        self.assertEqual(map_action_code(PunchSource.TERMINAL, " SET "), CanonicalAction.CHECK_OUT)
        self.assertEqual(map_action_code(PunchSource.TERMINAL, "passage"), CanonicalAction.IGNORED)
        self.assertEqual(map_action_code(PunchSource.TERMINAL, "해제"), CanonicalAction.CHECK_IN)

    def test_web_client_submits_canonical_actions(self) -> None:
        self.assertEqual(map_action_code(PunchSource.WEB_CLIENT, "check_out"), CanonicalAction.CHECK_OUT)

    def test_unknown_code_raises(self) -> None:
        with self.assertRaises(UnmappedActionCode) as ctx:
            map_action_code(PunchSource.TERMINAL, "ALARM")
        self.assertEqual(ctx.exception.context["raw_action_code"], "ALARM")
        self.assertEqual(ctx.exception.context["source"], "TERMINAL")

    def test_web_client_cannot_send_terminal_codes(self) -> None:
        with self.assertRaises(UnmappedActionCode):
            map_action_code(PunchSource.WEB_CLIENT, "RELEASE")

    def test_ignored_punch_flag(self) -> None:
        punch = _punch(PunchSource.TERMINAL, code="PASSAGE")
        self.assertTrue(punch.is_ignored)


class MergeDecisionTests(unittest.TestCase):
    def test_first_punch_is_inserted(self) -> None:
        decision = decide_merge(_punch(PunchSource.WEB_CLIENT), canonical=None, policy=DEFAULT_POLICY)
        self.assertEqual(decision.outcome, PunchOutcome.INSERTED)
        self.assertFalse(decision.supplementary)

    def test_lower_priority_within_window_is_duplicate(self) -> None:
        decision = decide_merge(
            _punch(PunchSource.WEB_CLIENT, minutes=2),
            canonical=_existing(PunchSource.TERMINAL),
            policy=DEFAULT_POLICY,
        )

        self.assertEqual(decision.outcome, PunchOutcome.DUPLICATE_DETECTED)
        self.assertEqual(decision.conflicting.source, PunchSource.TERMINAL)
        self.assertEqual(decision.distance, timedelta(minutes=2))
        self.assertIs(decision.duplicate_of, decision.conflicting)

    def test_equal_priority_at_window_edge_is_duplicate(self) -> None:
        decision = decide_merge(
            _punch(PunchSource.TERMINAL, minutes=5),
            canonical=_existing(PunchSource.TERMINAL),
            policy=DEFAULT_POLICY,
        )
        self.assertEqual(decision.outcome, PunchOutcome.DUPLICATE_DETECTED)

    def test_higher_priority_merges_regardless_of_distance(self) -> None:
        decision = decide_merge(
            _punch(PunchSource.TERMINAL, minutes=45),
            canonical=_existing(PunchSource.MANUAL),
            policy=DEFAULT_POLICY,
        )

        self.assertEqual(decision.outcome, PunchOutcome.MERGED)
        self.assertEqual(decision.conflicting.source, PunchSource.MANUAL)
        self.assertIsNone(decision.duplicate_of)

    def test_beyond_window_becomes_supplementary(self) -> None:
        decision = decide_merge(
            _punch(PunchSource.WEB_CLIENT, minutes=6),
            canonical=_existing(PunchSource.TERMINAL),
            policy=DEFAULT_POLICY,
        )

        self.assertEqual(decision.outcome, PunchOutcome.INSERTED)
        self.assertTrue(decision.supplementary)
        self.assertIn("6 min", decision.note)
        self.assertIsNone(decision.duplicate_of)

    def test_near_existing_supplementary_is_duplicate(self) -> None:
        decision = decide_merge(
            _punch(PunchSource.WEB_CLIENT, minutes=242),
            canonical=_existing(PunchSource.TERMINAL),
            supplementary=[_existing(PunchSource.WEB_CLIENT, minutes=240, record_type="supplementary")],
            policy=DEFAULT_POLICY,
        )

        self.assertEqual(decision.outcome, PunchOutcome.DUPLICATE_DETECTED)
        self.assertEqual(decision.conflicting.record_type, "supplementary")
        self.assertEqual(decision.duplicate_of.record_type, "supplementary")

    def test_custom_priority_and_window(self) -> None:
        policy = PolicySnapshot(
            source_priority=parse_source_priority("web_client, terminal"),
            dedup_window_minutes=1,
        )

        merged = decide_merge(
            _punch(PunchSource.WEB_CLIENT, minutes=2),
            canonical=_existing(PunchSource.TERMINAL),
            policy=policy,
        )
        separate = decide_merge(
            _punch(PunchSource.MANUAL, minutes=2),
            canonical=_existing(PunchSource.TERMINAL),
            policy=policy,
        )

        self.assertEqual(merged.outcome, PunchOutcome.MERGED)
        self.assertEqual(separate.outcome, PunchOutcome.INSERTED)
        self.assertTrue(separate.supplementary)

    def test_unknown_priority_entries_are_skipped(self) -> None:
        self.assertEqual(
            parse_source_priority("MANUAL,FAX,MANUAL"),
            (PunchSource.MANUAL,),
        )
        self.assertEqual(parse_source_priority(""), DEFAULT_POLICY.source_priority)


class KeyedLocksTests(unittest.TestCase):
    def test_same_key_is_serialized(self) -> None:
        locks = KeyedLocks()
        active = 0
        peak = 0
        guard = threading.Lock()

        def worker() -> None:
            nonlocal active, peak
            with locks.hold((1, "2026-03-02", "CHECK_IN")):
                with guard:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(peak, 1)
        self.assertEqual(len(locks), 0)


if __name__ == "__main__":
    unittest.main()
