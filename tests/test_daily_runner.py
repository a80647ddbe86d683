import shutil
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import patch

from mailtasks import daily_runner
from mailtasks.daily_runner import (
    generate_and_store_briefing,
    record_briefing_feedback,
    render_briefing_markdown,
    run_daily_briefings,
    write_briefing_to_file,
)
from mailtasks.errors import NotFoundError, ValidationFailed
from mailtasks.models import (
    BriefingFeedback,
    BriefingPreference,
    NotificationType,
    Task,
    TaskPriority,
    TaskStatus,
)
from mailtasks.storage import JsonStore


class DailyRunnerTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = JsonStore(Path(self.tmpdir) / "data")
        self.store.create_task(
            Task(
                workspace_id="ws1",
                title="Send invoice",
                status=TaskStatus.TODO,
                priority=TaskPriority.URGENT,
                due_date=date(2026, 2, 5),
            )
        )
        self.store.create_task(
            Task(workspace_id="ws1", title="Chase vendor", status=TaskStatus.WAITING)
        )

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _prefer(self, user_id: str, **fields) -> BriefingPreference:
        fields.setdefault("enabled", True)
        return self.store.upsert_briefing_preference(
            BriefingPreference(workspace_id="ws1", user_id=user_id, **fields)
        )

    # -- generate & store --------------------------------------------------------

    def test_generate_uses_default_timezone_for_today(self):
        # 03:00 UTC on the 8th is still the 7th in New York
        now = datetime(2026, 2, 8, 3, 0, tzinfo=timezone.utc)

        briefing = generate_and_store_briefing(self.store, None, "ws1", "u1", now=now)

        self.assertEqual(briefing.briefing_date, date(2026, 2, 7))
        self.assertFalse(briefing.content.ai_generated)
        self.assertEqual([o.days_overdue for o in briefing.content.overdue], [2])
        self.assertEqual([w.title for w in briefing.content.waiting_on], ["Chase vendor"])
        self.assertIsNotNone(self.store.get_briefing("ws1", "u1", date(2026, 2, 7)))

    def test_regenerating_overwrites_the_same_day(self):
        now = datetime(2026, 2, 7, 15, 0, tzinfo=timezone.utc)
        first = generate_and_store_briefing(self.store, None, "ws1", "u1", now=now)
        second = generate_and_store_briefing(self.store, None, "ws1", "u1", now=now)

        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.store.list_briefings("ws1", "u1")), 1)

    # -- hourly sweep ------------------------------------------------------------

    def test_sweep_delivers_at_local_delivery_hour(self):
        self._prefer("tokyo", timezone="Asia/Tokyo", delivery_time="08:00")
        self._prefer("london", timezone="Europe/London", delivery_time="08:00")

        # 23:15 UTC on the 6th is 08:15 on the 7th in Tokyo
        counts = run_daily_briefings(self.store, None, now=datetime(2026, 2, 6, 23, 15, tzinfo=timezone.utc))

        self.assertEqual(counts, {"checked": 2, "generated": 1, "skipped": 1, "failed": 0})
        self.assertIsNotNone(self.store.get_briefing("ws1", "tokyo", date(2026, 2, 7)))
        self.assertEqual(self.store.list_briefings("ws1", "london"), [])

        notes = self.store.list_notifications("ws1", "tokyo")
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0].type, NotificationType.BRIEFING_READY)
        self.assertEqual(notes[0].title, "Daily briefing ready")
        self.assertEqual(notes[0].action_url, "/briefing")

    def test_sweep_skips_users_who_already_have_a_briefing(self):
        self._prefer("u1", timezone="UTC", delivery_time="08:00")
        now = datetime(2026, 2, 7, 8, 5, tzinfo=timezone.utc)

        run_daily_briefings(self.store, None, now=now)
        counts = run_daily_briefings(self.store, None, now=now.replace(minute=40))

        self.assertEqual(counts["generated"], 0)
        self.assertEqual(counts["skipped"], 1)
        self.assertEqual(len(self.store.list_notifications("ws1", "u1")), 1)

    def test_disabled_preferences_are_ignored(self):
        self._prefer("u1", timezone="UTC", delivery_time="08:00", enabled=False)
        counts = run_daily_briefings(self.store, None, now=datetime(2026, 2, 7, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(counts["checked"], 0)

    def test_one_failure_does_not_stop_the_sweep(self):
        self._prefer("bad", timezone="UTC", delivery_time="08:00")
        self._prefer("good", timezone="UTC", delivery_time="08:00")
        real = daily_runner.generate_and_store_briefing

        def flaky(store, llm, workspace_id, user_id, now=None):
            if user_id == "bad":
                raise RuntimeError("boom")
            return real(store, llm, workspace_id, user_id, now=now)

        with patch.object(daily_runner, "generate_and_store_briefing", side_effect=flaky):
            counts = run_daily_briefings(
                self.store, None, now=datetime(2026, 2, 7, 8, 0, tzinfo=timezone.utc)
            )

        self.assertEqual(counts["generated"], 1)
        self.assertEqual(counts["failed"], 1)
        self.assertEqual(self.store.list_notifications("ws1", "bad"), [])

    # -- feedback ----------------------------------------------------------------

    def test_feedback(self):
        briefing = generate_and_store_briefing(
            self.store, None, "ws1", "u1", now=datetime(2026, 2, 7, 15, tzinfo=timezone.utc)
        )

        with self.assertRaises(ValidationFailed):
            record_briefing_feedback(self.store, briefing.id, "ws1", "u1", "meh")
        with self.assertRaises(NotFoundError):
            record_briefing_feedback(self.store, "missing", "ws1", "u1", "thumbs_up")

        updated = record_briefing_feedback(self.store, briefing.id, "ws1", "u1", "thumbs_down", "Too long")
        self.assertEqual(updated.feedback, BriefingFeedback.THUMBS_DOWN)
        self.assertEqual(updated.feedback_notes, "Too long")

    # -- markdown ----------------------------------------------------------------

    def test_render_and_write_markdown(self):
        briefing = generate_and_store_briefing(
            self.store, None, "ws1", "u1", now=datetime(2026, 2, 7, 15, tzinfo=timezone.utc)
        )

        text = render_briefing_markdown(briefing)

        self.assertTrue(text.startswith("# Daily Briefing: 2026-02-07"))
        for heading in ("## Top Outcomes", "## Must Do", "## Overdue", "## Waiting On"):
            self.assertIn(heading, text)
        self.assertIn("- Send invoice: 2 days overdue", text)
        self.assertIn("- Chase vendor: Waiting on response", text)
        self.assertNotIn("## Could Defer", text)

        path = write_briefing_to_file(Path(self.tmpdir) / "out" / "briefing.md", text)
        self.assertEqual(path.read_text(encoding="utf-8"), text)


if __name__ == "__main__":
    unittest.main()
