import shutil
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

from fakes import FakeExtractor, FakeMailbox, make_credentials, make_email

from mailtasks.errors import MailboxError, NotFoundError, StorageError
from mailtasks.extractor import LLM_ERROR, MALFORMED_OUTPUT, ExtractionFailure
from mailtasks.models import (
    CandidateTask,
    EmailProvider,
    NotificationType,
    ScanConfig,
    ScanStatus,
    TaskSourceType,
)
from mailtasks.scan_engine import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    ScanDependencies,
    effective_interval_hours,
    effective_threshold,
    is_quiet_hours,
    run_scan,
    run_scheduled_sweep,
    skip_reason,
)
from mailtasks.storage import JsonStore

# Wednesday, outside any quiet hours used below
WEEKDAY_NOON = datetime(2026, 2, 4, 12, 0)
SATURDAY_NOON = datetime(2026, 2, 7, 12, 0)


class QuietHoursTests(unittest.TestCase):
    def test_overnight_window_wraps_midnight(self):
        self.assertTrue(is_quiet_hours("22:00", "06:00", datetime(2026, 2, 4, 23, 0)))
        self.assertTrue(is_quiet_hours("22:00", "06:00", datetime(2026, 2, 4, 2, 0)))
        self.assertFalse(is_quiet_hours("22:00", "06:00", datetime(2026, 2, 4, 10, 0)))

    def test_same_day_window(self):
        self.assertTrue(is_quiet_hours("09:00", "17:00", datetime(2026, 2, 4, 12, 0)))
        self.assertFalse(is_quiet_hours("09:00", "17:00", datetime(2026, 2, 4, 20, 0)))

    def test_window_end_is_exclusive(self):
        self.assertTrue(is_quiet_hours("09:00", "17:00", datetime(2026, 2, 4, 9, 0)))
        self.assertFalse(is_quiet_hours("09:00", "17:00", datetime(2026, 2, 4, 17, 0)))

    def test_missing_or_malformed_bounds_mean_no_quiet_hours(self):
        self.assertFalse(is_quiet_hours(None, "06:00", datetime(2026, 2, 4, 2, 0)))
        self.assertFalse(is_quiet_hours("late", "06:00", datetime(2026, 2, 4, 2, 0)))

    def test_skip_reason(self):
        config = ScanConfig(workspace_id="ws", user_id="u")
        self.assertIsNone(skip_reason(config, WEEKDAY_NOON))
        self.assertEqual(skip_reason(config, SATURDAY_NOON), "weekend")
        self.assertIsNone(skip_reason(config.model_copy(update={"weekend_scan": True}), SATURDAY_NOON))
        self.assertEqual(skip_reason(config.model_copy(update={"enabled": False}), WEEKDAY_NOON), "disabled")
        quiet = config.model_copy(update={"quiet_hours_start": "11:00", "quiet_hours_end": "13:00"})
        self.assertEqual(skip_reason(quiet, WEEKDAY_NOON), "quiet hours")


class EffectiveSettingsTests(unittest.TestCase):
    def test_out_of_range_values_are_clamped(self):
        config = ScanConfig(workspace_id="ws", user_id="u", confidence_threshold=1.5, scan_interval_hours=48)
        self.assertEqual(effective_threshold(config), 1.0)
        self.assertEqual(effective_interval_hours(config), 24)

        config = ScanConfig(workspace_id="ws", user_id="u", confidence_threshold=-0.2, scan_interval_hours=0)
        self.assertEqual(effective_threshold(config), 0.0)
        self.assertEqual(effective_interval_hours(config), 1)

    def test_in_range_values_pass_through(self):
        config = ScanConfig(workspace_id="ws", user_id="u", confidence_threshold=0.6, scan_interval_hours=6)
        self.assertEqual(effective_threshold(config), 0.6)
        self.assertEqual(effective_interval_hours(config), 6)

    def test_nan_threshold_falls_back_to_default(self):
        config = ScanConfig.model_validate_json(
            '{"workspace_id": "ws", "user_id": "u", "confidence_threshold": NaN}'
        )
        self.assertEqual(effective_threshold(config), DEFAULT_CONFIDENCE_THRESHOLD)


class RunScanTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = JsonStore(Path(self.tmpdir))
        self.store.ensure_data_files_exist()

        self.mailbox = FakeMailbox([make_email("m1"), make_email("m2")])
        self.credentials = make_credentials(self.mailbox)
        self.extractor = FakeExtractor()
        self.deps = ScanDependencies(
            store=self.store,
            credentials=self.credentials,
            adapters={EmailProvider.GMAIL: self.mailbox},
            extractor=self.extractor,
            max_results=20,
        )
        self.config = self._add_config()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _add_config(self, **overrides) -> ScanConfig:
        fields = dict(
            workspace_id="ws1",
            user_id="u1",
            provider=EmailProvider.GMAIL,
            encrypted_refresh_token=self.credentials.encrypt("refresh-token"),
        )
        fields.update(overrides)
        return self.store.upsert_scan_config(ScanConfig(**fields))

    def _tasks(self):
        return self.store.list_tasks("ws1")

    # -- gates ---------------------------------------------------------------

    def test_disabled_config_writes_nothing_and_calls_nothing(self):
        self.store.update_scan_config(self.config.id, enabled=False)

        result = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertIsNone(result)
        self.assertEqual(self.store.list_scan_logs(self.config.id), [])
        self.assertEqual(self.mailbox.refresh_calls, [])
        self.assertEqual(self.mailbox.list_calls, [])

    def test_config_already_running_is_skipped(self):
        self.assertTrue(self.deps.in_flight.claim(self.config.id))

        self.assertIsNone(run_scan(self.deps, self.config.id, now=WEEKDAY_NOON))
        self.assertEqual(self.store.list_scan_logs(self.config.id), [])
        self.assertEqual(self.mailbox.refresh_calls, [])

        self.deps.in_flight.release(self.config.id)
        self.assertIsNotNone(run_scan(self.deps, self.config.id, now=WEEKDAY_NOON))

    def test_in_flight_claim_is_released_after_a_crash(self):
        with patch.object(self.store, "create_scan_log", side_effect=StorageError("disk full")):
            with self.assertRaises(StorageError):
                run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertTrue(self.deps.in_flight.claim(self.config.id))

    def test_weekend_is_skipped_unless_enabled(self):
        self.assertIsNone(run_scan(self.deps, self.config.id, now=SATURDAY_NOON))
        self.assertEqual(self.mailbox.refresh_calls, [])

        self.store.update_scan_config(self.config.id, weekend_scan=True)
        log = run_scan(self.deps, self.config.id, now=SATURDAY_NOON)
        self.assertEqual(log.status, ScanStatus.COMPLETED)

    def test_quiet_hours_skip(self):
        self.store.update_scan_config(self.config.id, quiet_hours_start="22:00", quiet_hours_end="06:00")
        self.assertIsNone(run_scan(self.deps, self.config.id, now=datetime(2026, 2, 4, 23, 30)))
        self.assertEqual(self.store.list_scan_logs(self.config.id), [])

    def test_unknown_config_raises(self):
        with self.assertRaises(NotFoundError):
            run_scan(self.deps, "missing", now=WEEKDAY_NOON)

    # -- happy path ----------------------------------------------------------

    def test_completed_scan_persists_tasks_and_log(self):
        self.extractor.results = {
            "m1": [
                CandidateTask(title="Send report", confidence_score=0.9),
                CandidateTask(title="Book room", confidence_score=0.7),
            ],
            "m2": [CandidateTask(title="Maybe reply", confidence_score=0.5)],
        }

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertEqual(log.emails_scanned, 2)
        self.assertEqual(log.tasks_extracted, 3)
        self.assertEqual(log.tasks_for_review, 1)
        self.assertEqual(log.errors, [])
        self.assertIsNotNone(log.completed_at)

        review = {t.title: t.needs_review for t in self._tasks()}
        self.assertEqual(review, {"Send report": False, "Book room": False, "Maybe reply": True})

        stored = self.store.get_scan_config(self.config.id)
        self.assertIsNotNone(stored.last_scan_at)
        self.assertEqual(self.credentials.decrypt(stored.encrypted_access_token), "access-new")

        logs = self.store.list_scan_logs(self.config.id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].status, ScanStatus.COMPLETED)

    def test_task_exactly_at_threshold_does_not_need_review(self):
        self.mailbox.emails = {"m1": make_email("m1")}
        self.extractor.results = {"m1": [CandidateTask(title="Edge", confidence_score=0.7)]}

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.tasks_for_review, 0)
        self.assertFalse(self._tasks()[0].needs_review)

    def test_tasks_link_to_one_source_per_email(self):
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        source = self.store.find_source("ws1", TaskSourceType.EMAIL, "m1")
        self.assertIsNotNone(source)
        self.assertEqual(source.title, "Subject m1")
        self.assertEqual(source.metadata["sender"], "Alice <alice@example.com>")
        linked = [t for t in self._tasks() if t.source_id == source.id]
        self.assertEqual(len(linked), 1)
        self.assertEqual(linked[0].source_type, TaskSourceType.EMAIL)
        self.assertEqual(linked[0].creator_id, "u1")

    def test_second_scan_is_idempotent(self):
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        tasks_after_first = len(self._tasks())
        detail_calls_after_first = list(self.mailbox.detail_calls)

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertEqual(log.emails_scanned, 2)
        self.assertEqual(log.tasks_extracted, 0)
        self.assertEqual(len(self._tasks()), tasks_after_first)
        self.assertEqual(self.extractor.calls, ["m1", "m2"])
        # Dedup happens before the detail round-trip
        self.assertEqual(self.mailbox.detail_calls, detail_calls_after_first)

    def test_attached_emails_skip_detail_fetch(self):
        self.mailbox.attach = True
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        self.assertEqual(self.mailbox.detail_calls, [])
        self.assertEqual(len(self._tasks()), 2)

    def test_zero_candidates_writes_no_source(self):
        self.extractor.results = {"m1": [], "m2": []}
        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        self.assertEqual(log.tasks_extracted, 0)
        self.assertIsNone(self.store.find_source("ws1", TaskSourceType.EMAIL, "m1"))

    # -- failures ------------------------------------------------------------

    def test_refresh_failure_fails_the_run(self):
        self.mailbox.refresh_error = MailboxError("Failed to refresh token: invalid_grant")

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.FAILED)
        self.assertIn("Failed to refresh token: invalid_grant", log.errors)
        self.assertEqual(self.mailbox.list_calls, [])
        self.assertIsNone(self.store.get_scan_config(self.config.id).last_scan_at)
        self.assertEqual(self.store.list_notifications("ws1", "u1"), [])
        self.assertEqual(self.store.list_scan_logs(self.config.id)[0].status, ScanStatus.FAILED)

    def test_missing_refresh_token_fails_the_run(self):
        self.store.update_scan_config(self.config.id, encrypted_refresh_token=None)
        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        self.assertEqual(log.status, ScanStatus.FAILED)
        self.assertEqual(self.mailbox.refresh_calls, [])

    def test_list_failure_keeps_the_refreshed_token(self):
        self.mailbox.list_error = MailboxError("Failed to fetch emails: 503")

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.FAILED)
        stored = self.store.get_scan_config(self.config.id)
        self.assertEqual(self.credentials.decrypt(stored.encrypted_access_token), "access-new")

    def test_one_bad_email_does_not_stop_the_loop(self):
        self.extractor.results = {"m1": RuntimeError("boom")}

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertEqual(log.tasks_extracted, 1)
        self.assertEqual(len(log.errors), 1)
        self.assertTrue(log.errors[0].startswith("Error processing email m1"))

    def test_llm_error_is_recorded_and_email_is_retried_later(self):
        self.extractor.results = {"m1": ExtractionFailure(LLM_ERROR, "HTTP 500")}

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.errors, ["Error processing email m1: HTTP 500"])
        self.assertIsNone(self.store.find_source("ws1", TaskSourceType.EMAIL, "m1"))

        self.extractor.results = {}
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        self.assertIsNotNone(self.store.find_source("ws1", TaskSourceType.EMAIL, "m1"))

    def test_malformed_output_counts_as_no_tasks(self):
        self.extractor.results = {"m1": ExtractionFailure(MALFORMED_OUTPUT, "not an array")}

        log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertEqual(log.errors, [])
        self.assertEqual(log.tasks_extracted, 1)

    def test_source_insert_failure_skips_the_email(self):
        with patch.object(self.store, "create_source", side_effect=StorageError("disk full")):
            log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertIn("Failed to create source for email m1", log.errors)
        self.assertEqual(self._tasks(), [])

    def test_task_insert_failure_continues_with_next_task(self):
        self.mailbox.emails = {"m1": make_email("m1")}
        self.extractor.results = {
            "m1": [CandidateTask(title="First", confidence_score=0.9), CandidateTask(title="Second", confidence_score=0.9)]
        }
        real_create = self.store.create_task
        calls = []

        def flaky(task):
            calls.append(task.title)
            if task.title == "First":
                raise StorageError("constraint violated")
            return real_create(task)

        with patch.object(self.store, "create_task", side_effect=flaky):
            log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(calls, ["First", "Second"])
        self.assertEqual(log.tasks_extracted, 1)
        self.assertEqual(log.errors, ["Failed to create task: constraint violated"])

    def test_disk_write_failure_on_one_task_keeps_the_rest(self):
        self.mailbox.emails = {"m1": make_email("m1")}
        self.extractor.results = {
            "m1": [CandidateTask(title="First", confidence_score=0.9), CandidateTask(title="Second", confidence_score=0.9)]
        }
        real_save = self.store._save
        failed = []

        def save(name, container):
            if name == "tasks" and not failed:
                failed.append(name)
                raise OSError(28, "No space left on device")
            return real_save(name, container)

        with patch.object(self.store, "_save", side_effect=save):
            log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual([t.title for t in self._tasks()], ["Second"])
        self.assertEqual(log.tasks_extracted, 1)
        self.assertEqual(len(log.errors), 1)
        self.assertTrue(log.errors[0].startswith("Failed to create task: Failed to write data file"))

    # -- notifications -------------------------------------------------------

    def test_both_notifications_fire_when_tasks_need_review(self):
        self.extractor.results = {
            "m1": [CandidateTask(title="Clear", confidence_score=0.9)],
            "m2": [CandidateTask(title="Unclear", confidence_score=0.3)],
        }

        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        notes = {n.type: n for n in self.store.list_notifications("ws1", "u1")}
        self.assertEqual(set(notes), {NotificationType.SCAN_COMPLETE, NotificationType.REVIEW_NEEDED})
        self.assertEqual(notes[NotificationType.SCAN_COMPLETE].message, "2 tasks extracted, 1 for review")
        self.assertEqual(notes[NotificationType.SCAN_COMPLETE].action_url, "/review")
        self.assertEqual(notes[NotificationType.REVIEW_NEEDED].message, "1 new task need your review")

    def test_scan_complete_points_to_inbox_without_review(self):
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        notes = self.store.list_notifications("ws1", "u1")
        self.assertEqual([n.type for n in notes], [NotificationType.SCAN_COMPLETE])
        self.assertEqual(notes[0].action_url, "/inbox")

    def test_no_notifications_without_tasks(self):
        self.extractor.results = {"m1": [], "m2": []}
        run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)
        self.assertEqual(self.store.list_notifications("ws1", "u1"), [])

    def test_notification_failure_does_not_change_the_log(self):
        with patch.object(self.store, "create_notification", side_effect=StorageError("down")):
            log = run_scan(self.deps, self.config.id, now=WEEKDAY_NOON)

        self.assertEqual(log.status, ScanStatus.COMPLETED)
        self.assertEqual(log.errors, [])
        self.assertEqual(self.store.list_scan_logs(self.config.id)[0].errors, [])


class ScheduledSweepTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = JsonStore(Path(self.tmpdir))
        self.gmail = FakeMailbox([make_email("g1")])
        self.outlook = FakeMailbox([make_email("o1")], provider=EmailProvider.OUTLOOK, attach=True)
        self.credentials = make_credentials(self.gmail, self.outlook)
        self.deps = ScanDependencies(
            store=self.store,
            credentials=self.credentials,
            adapters={EmailProvider.GMAIL: self.gmail, EmailProvider.OUTLOOK: self.outlook},
            extractor=FakeExtractor(),
        )
        token = self.credentials.encrypt("refresh-token")
        for user, provider in (("u1", EmailProvider.GMAIL), ("u2", EmailProvider.OUTLOOK)):
            self.store.upsert_scan_config(
                ScanConfig(workspace_id="ws1", user_id=user, provider=provider, encrypted_refresh_token=token)
            )
        self.store.upsert_scan_config(
            ScanConfig(workspace_id="ws1", user_id="u3", enabled=False, encrypted_refresh_token=token)
        )

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_one_failing_config_does_not_stop_the_sweep(self):
        self.gmail.refresh_error = MailboxError("revoked")

        counts = run_scheduled_sweep(self.deps, now=WEEKDAY_NOON)

        self.assertEqual(counts, {"processed": 2, "scanned": 1, "skipped": 0, "failed": 1})
        self.assertIsNotNone(self.store.find_source("ws1", TaskSourceType.EMAIL, "o1"))

    def test_parallel_sweep_gives_same_counts(self):
        counts = run_scheduled_sweep(self.deps, now=WEEKDAY_NOON, max_workers=2)
        self.assertEqual(counts, {"processed": 2, "scanned": 2, "skipped": 0, "failed": 0})
        self.assertEqual(len(self.store.list_tasks("ws1")), 2)

    def test_gated_configs_count_as_skipped(self):
        counts = run_scheduled_sweep(self.deps, now=SATURDAY_NOON)
        self.assertEqual(counts["skipped"], 2)
        self.assertEqual(self.gmail.refresh_calls, [])


if __name__ == "__main__":
    unittest.main()
