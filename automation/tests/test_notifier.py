import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

# Allow importing the automation/ modules in test runs.
AUTOMATION_DIR = Path(__file__).resolve().parents[1]
if str(AUTOMATION_DIR) not in sys.path:
    sys.path.insert(0, str(AUTOMATION_DIR))

import requests  # noqa: E402

import notifier  # noqa: E402
from evaluator import Switch  # noqa: E402
from fake_supabase import FakeClient, FakeTable  # noqa: E402
from reminder_tiers import ReminderTier  # noqa: E402


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _DummyResponse:
    def __init__(self, status_code: int = 200, text: str = ""):
        self.status_code = status_code
        self.text = text


def _switch(**overrides) -> Switch:
    fields = {
        "id": "secret-1",
        "deadline": NOW + timedelta(minutes=40),
        "interval": timedelta(days=30),
        "title": "Letter to Sam",
        "user_id": "user-1",
        "contact_email": "owner@example.com",
    }
    fields.update(overrides)
    return Switch(**fields)


def _notifier(client=None, fcm_ctx=None) -> notifier.ReminderNotifier:
    return notifier.ReminderNotifier(
        client or FakeClient(),
        resend_key="rk_test",
        from_email="reminders@example.com",
        site_url="https://app.example.com/",
        fcm_ctx=fcm_ctx,
    )


class ReminderEmailTests(unittest.TestCase):

    def test_critical_reminder_wording(self):
        subject, text, html = notifier.build_reminder_email(
            "Letter <to> Sam",
            ReminderTier.ONE_HOUR,
            NOW + timedelta(minutes=40),
            NOW,
            "https://app.example.com/dashboard",
        )

        self.assertEqual(subject, "CRITICAL: Check-in required within 1 hour - Letter <to> Sam")
        self.assertIn("Time is running out!", text)
        self.assertIn("https://app.example.com/dashboard", text)
        self.assertIn("Letter &lt;to&gt; Sam", html)
        self.assertNotIn("Letter <to> Sam", html)

    def test_low_urgency_reminder_has_no_alarm(self):
        subject, text, _html = notifier.build_reminder_email(
            "Letter",
            ReminderTier.FIFTY_PERCENT,
            NOW + timedelta(days=15),
            NOW,
            "https://app.example.com/dashboard",
        )

        self.assertEqual(subject, "Scheduled: Check-in required within 15 days - Letter")
        self.assertNotIn("Time is running out!", text)

    def test_idempotency_key_is_per_secret_deadline_and_tier(self):
        deadline = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

        key = notifier.reminder_idempotency_key("secret-1", deadline, ReminderTier.THREE_DAYS)

        self.assertEqual(key, "reminder-secret-1-2026-03-02T12:00:00+00:00-3_days")
        self.assertNotEqual(
            key,
            notifier.reminder_idempotency_key(
                "secret-1", deadline + timedelta(days=1), ReminderTier.THREE_DAYS
            ),
        )


class SendPushTests(unittest.TestCase):

    def test_collapse_id_is_set_for_android_and_apns(self):
        with patch.object(
            notifier, "_post_json_with_retries", return_value=_DummyResponse(200, "{}")
        ) as mocked_post:
            notifier.send_push_v1(
                "proj", "token", "device-1", "Title", "Body", {"k": "v"}, collapse_id="abc123"
            )

        message = mocked_post.call_args.kwargs["payload"]["message"]
        self.assertEqual(message["android"]["collapse_key"], "abc123")
        self.assertEqual(message["android"]["notification"]["tag"], "abc123")
        self.assertEqual(message["apns"]["headers"]["apns-collapse-id"], "abc123")
        self.assertEqual(message["data"], {"k": "v"})

    def test_no_collapse_id_leaves_platform_blocks_out(self):
        with patch.object(
            notifier, "_post_json_with_retries", return_value=_DummyResponse(200, "{}")
        ) as mocked_post:
            notifier.send_push_v1("proj", "token", "device-1", "Title", "Body")

        message = mocked_post.call_args.kwargs["payload"]["message"]
        self.assertNotIn("android", message)
        self.assertNotIn("apns", message)

    def test_collapse_id_is_stable_per_reminder_and_fits_apns(self):
        deadline = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

        first = notifier.reminder_collapse_id("secret-1", deadline, ReminderTier.ONE_HOUR)

        self.assertEqual(
            first, notifier.reminder_collapse_id("secret-1", deadline, ReminderTier.ONE_HOUR)
        )
        self.assertNotEqual(
            first, notifier.reminder_collapse_id("secret-1", deadline, ReminderTier.TWELVE_HOURS)
        )
        self.assertLessEqual(len(first.encode("utf-8")), 64)


class SendEmailTests(unittest.TestCase):

    def test_send_email_passes_idempotency_key(self):
        with patch.object(
            notifier,
            "_post_json_with_retries",
            return_value=_DummyResponse(200, "ok"),
        ) as mocked_post:
            notifier.send_email(
                api_key="rk_test",
                from_email="from@example.com",
                to_email="to@example.com",
                subject="Subject",
                text="Plain",
                html="<p>Plain</p>",
                idempotency_key="reminder-secret-1",
            )

        self.assertEqual(mocked_post.call_count, 1)
        self.assertEqual(
            mocked_post.call_args.kwargs.get("idempotency_key"),
            "reminder-secret-1",
        )

    def test_send_email_raises_on_error_status(self):
        with patch.object(
            notifier,
            "_post_json_with_retries",
            return_value=_DummyResponse(422, "invalid from"),
        ):
            with self.assertRaises(RuntimeError):
                notifier.send_email("rk", "from@example.com", "to@example.com", "s", "t", "<p>t</p>")

    def test_retries_transient_status_then_succeeds(self):
        responses = [_DummyResponse(503, "busy"), _DummyResponse(200, "ok")]
        with (
            patch.object(notifier.requests, "post", side_effect=responses) as mocked_post,
            patch.object(notifier.time, "sleep") as mocked_sleep,
        ):
            response = notifier._post_json_with_retries(
                "https://api.resend.com/emails",
                headers={},
                payload={},
                idempotency_key="key-1",
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(mocked_post.call_count, 2)
        mocked_sleep.assert_called_once()
        self.assertEqual(
            mocked_post.call_args.kwargs["headers"]["Idempotency-Key"], "key-1"
        )

    def test_gives_up_after_repeated_network_errors(self):
        with (
            patch.object(
                notifier.requests,
                "post",
                side_effect=requests.ConnectionError("connection reset"),
            ) as mocked_post,
            patch.object(notifier.time, "sleep"),
        ):
            with self.assertRaises(requests.ConnectionError):
                notifier._post_json_with_retries("https://example.com", headers={}, payload={})

        self.assertEqual(mocked_post.call_count, len(notifier.HTTP_RETRY_DELAYS_SECONDS) + 1)


class ReminderNotifierTests(unittest.TestCase):

    def test_notify_sends_email_with_reminder_key(self):
        with patch.object(notifier, "send_email") as mocked_send:
            delivered = _notifier().notify(_switch(), ReminderTier.ONE_HOUR, now=NOW)

        self.assertTrue(delivered)
        args = mocked_send.call_args.args
        self.assertEqual(args[1], "reminders@example.com")
        self.assertEqual(args[2], "owner@example.com")
        self.assertIn("https://app.example.com/dashboard", args[4])
        self.assertEqual(
            mocked_send.call_args.kwargs["idempotency_key"],
            notifier.reminder_idempotency_key(
                "secret-1", NOW + timedelta(minutes=40), ReminderTier.ONE_HOUR
            ),
        )

    def test_notify_without_any_channel_is_not_delivered(self):
        with patch.object(notifier, "send_email") as mocked_send:
            delivered = _notifier().notify(
                _switch(contact_email=None), ReminderTier.ONE_HOUR, now=NOW
            )

        self.assertFalse(delivered)
        mocked_send.assert_not_called()

    def test_email_failure_raises_with_reason(self):
        with patch.object(notifier, "send_email", side_effect=RuntimeError("Resend error: 500")):
            with self.assertRaisesRegex(notifier.DeliveryError, "email: Resend error: 500"):
                _notifier().notify(_switch(), ReminderTier.ONE_HOUR, now=NOW)

    def test_email_network_error_raises(self):
        with patch.object(
            notifier, "send_email", side_effect=requests.ConnectionError("connection reset")
        ):
            with self.assertRaisesRegex(notifier.DeliveryError, "connection reset"):
                _notifier().notify(_switch(), ReminderTier.ONE_HOUR, now=NOW)

    def test_push_counts_as_delivery_and_prunes_dead_tokens(self):
        devices = FakeTable(
            "push_devices",
            [
                {"user_id": "user-1", "fcm_token": "dead-token"},
                {"user_id": "user-1", "fcm_token": "live-token"},
                {"user_id": "user-2", "fcm_token": "other-token"},
            ],
        )
        client = FakeClient(push_devices=devices)
        fcm_ctx = {"project_id": "proj", "access_token": "token", "service_account_info": {}}

        def fake_push(project_id, access_token, fcm_token, title, body, data=None, **_kwargs):
            if fcm_token == "dead-token":
                return _DummyResponse(404, "UNREGISTERED")
            return _DummyResponse(200, "{}")

        with (
            patch.object(notifier, "send_push_v1", side_effect=fake_push) as mocked_push,
            patch.object(notifier, "send_email", side_effect=RuntimeError("Resend down")),
        ):
            delivered = _notifier(client, fcm_ctx).notify(
                _switch(), ReminderTier.TWELVE_HOURS, now=NOW
            )

        self.assertTrue(delivered)
        self.assertEqual(mocked_push.call_count, 2)
        self.assertEqual(
            mocked_push.call_args.args[5],
            {"type": "reminder", "secret_id": "secret-1", "tier": "12_hours"},
        )
        self.assertEqual(
            mocked_push.call_args.kwargs["collapse_id"],
            notifier.reminder_collapse_id(
                "secret-1", NOW + timedelta(minutes=40), ReminderTier.TWELVE_HOURS
            ),
        )
        self.assertEqual(
            [row["fcm_token"] for row in devices.rows], ["live-token", "other-token"]
        )

    def test_invalid_fcm_token_detection(self):
        self.assertTrue(
            notifier._is_invalid_fcm_token_response("registration-token-not-registered")
        )
        self.assertTrue(
            notifier._is_invalid_fcm_token_response("Requested entity was not found")
        )
        self.assertFalse(notifier._is_invalid_fcm_token_response("internal server error"))

    def test_build_fcm_context_rejects_bad_json(self):
        self.assertIsNone(notifier.build_fcm_context(""))
        self.assertIsNone(notifier.build_fcm_context("{not json"))
        self.assertIsNone(notifier.build_fcm_context('{"client_email": "x"}'))


if __name__ == "__main__":
    unittest.main()
