import pytest

from app.services import notifications
from app.services.idempotency import begin_processing, mark_processed, record_ignored
from app.services.notifications import Notification, dispatch_notifications


class RecordingTask:
    def __init__(self):
        self.sent = []

    def delay(self, *args):
        self.sent.append(args)


async def test_guard_lifecycle(session):
    first = await begin_processing(session, "evt_1", {"id": "evt_1"}, "invoice.paid")
    assert first.already_processed is False
    assert first.event.processed is False

    retry = await begin_processing(session, "evt_1", {"id": "evt_1", "attempt": 2}, "invoice.paid")
    assert retry.already_processed is False
    assert retry.event.payload["attempt"] == 2

    await mark_processed(session, "evt_1")
    await session.commit()

    done = await begin_processing(session, "evt_1", {"id": "evt_1"}, "invoice.paid")
    assert done.already_processed is True
    assert done.event.processed_at is not None


async def test_guard_requires_event_id(session):
    with pytest.raises(ValueError):
        await begin_processing(session, "", {}, None)


async def test_mark_processed_unknown_event(session):
    with pytest.raises(LookupError):
        await mark_processed(session, "evt_missing")


async def test_ignored_event_is_recorded_as_processed(session):
    await record_ignored(session, "evt_2", {"id": "evt_2"}, "customer.created")
    result = await begin_processing(session, "evt_2", {"id": "evt_2"}, "customer.created")
    assert result.already_processed is True


def test_dispatch_skips_when_smtp_missing(monkeypatch):
    outbox = RecordingTask()
    monkeypatch.setattr(notifications, "send_notification_email", outbox)

    dispatch_notifications([Notification(to="ana@example.com", subject="s", text="t")])

    assert outbox.sent == []


def test_dispatch_enqueues_each_message(monkeypatch, settings):
    outbox = RecordingTask()
    monkeypatch.setattr(notifications, "send_notification_email", outbox)
    monkeypatch.setattr(settings, "email_host", "smtp.example.com")
    monkeypatch.setattr(settings, "email_port", 587)
    monkeypatch.setattr(settings, "email_user", "mailer")
    monkeypatch.setattr(settings, "email_pass", "secret")

    dispatch_notifications(
        [
            Notification(to="ana@example.com", subject="a", text="1"),
            Notification(to="", subject="sem destino", text="2"),
            Notification(to="bia@example.com", subject="b", text="3"),
        ]
    )

    assert [args[0] for args in outbox.sent] == ["ana@example.com", "bia@example.com"]
