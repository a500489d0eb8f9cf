"""Tests for idempotent owner notifications."""

from agentpass.notifications import NotificationService, STEP_UP_NOTIFICATION


class TestNotificationService:
    def test_replayed_key_delivers_once(self, app, sender):
        first = app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {"n": 1}, idempotency_key="su-1")
        second = app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {"n": 1}, idempotency_key="su-1")
        assert first.success and not first.duplicate
        assert second.duplicate
        assert second.notification_id == first.notification_id
        assert len(sender.sent) == 1

    def test_same_key_different_type_is_distinct(self, app, sender):
        app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {}, idempotency_key="k")
        app.notifications.notify("owner-1", "agent.access_request", {}, idempotency_key="k")
        assert len(sender.sent) == 2

    def test_failure_is_returned_and_retry_allowed(self, app, sender):
        sender.fail = True
        failed = app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {}, idempotency_key="su-2")
        assert not failed.success
        assert "push gateway unavailable" in failed.error

        sender.fail = False
        retried = app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {}, idempotency_key="su-2")
        assert retried.success and not retried.duplicate
        assert len(sender.sent) == 1

    def test_without_key_always_sends(self, app, sender):
        app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {})
        app.notifications.notify("owner-1", STEP_UP_NOTIFICATION, {})
        assert len(sender.sent) == 2

    def test_default_sender_only_logs(self, app, caplog):
        service = NotificationService(app.store)
        with caplog.at_level("INFO", logger="agentpass.notifications"):
            result = service.notify("owner-1", STEP_UP_NOTIFICATION, {})
        assert result.success
        assert "Notification agent.step_up for user owner-1" in caplog.text
