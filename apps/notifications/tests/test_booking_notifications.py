"""Customer emails are sent after commit and never break the booking flow."""

from __future__ import annotations

import pytest

from apps.bookings.application.command_handlers import ConfirmBookingCommand, RecordOpsStepCommand
from apps.bookings.models import Booking
from apps.notifications import services as notifications
from apps.notifications import tasks as notification_tasks
from apps.notifications.services import Stage
from shared.application.message_bus import message_bus


def pay(booking, staff) -> None:
    message_bus.handle_command(ConfirmBookingCommand(booking_id=booking.pk, actor=staff))
    message_bus.handle_command(RecordOpsStepCommand(
        booking_id=booking.pk, step_id="payment", data={"deposit_collected": True}, actor=staff,
    ))


@pytest.mark.django_db
def test_payment_confirmation_emails_customer(make_booking, staff, mailoutbox, django_capture_on_commit_callbacks) -> None:
    booking = make_booking()

    with django_capture_on_commit_callbacks(execute=True):
        pay(booking, staff)

    assert len(mailoutbox) == 1
    email = mailoutbox[0]
    assert email.to == ["driver@example.com"]
    assert email.subject == f"Booking {booking.code}: Payment received"
    assert "security deposit" in email.body


@pytest.mark.django_db
def test_no_email_before_commit(make_booking, staff, mailoutbox) -> None:
    pay(make_booking(), staff)
    assert mailoutbox == []


@pytest.mark.django_db
def test_broker_failure_does_not_fail_command(make_booking, staff, monkeypatch, django_capture_on_commit_callbacks) -> None:
    booking = make_booking()

    def broker_down(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(notification_tasks.send_booking_notification, "delay", broker_down)
    with django_capture_on_commit_callbacks(execute=True):
        pay(booking, staff)

    assert Booking.objects.get(pk=booking.pk).status == Booking.Status.CONFIRMED


@pytest.mark.django_db
def test_mail_backend_failure_is_reported_not_raised(make_booking, monkeypatch) -> None:
    booking = make_booking()

    def smtp_down(**kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(notifications, "send_mail", smtp_down)
    assert notifications.send_booking_email(booking, Stage.ACTIVATED) is False


@pytest.mark.django_db
def test_capture_email_states_amount(make_booking) -> None:
    booking = make_booking()
    booking.deposit_captured_amount = "120.00"

    subject, body = notifications.build_booking_message(booking, Stage.DEPOSIT_CAPTURED)

    assert subject.endswith("Deposit charged")
    assert "Amount charged: 120.00 CAD" in body


@pytest.mark.django_db
def test_missing_booking_is_skipped() -> None:
    assert notification_tasks.send_booking_notification("00000000-0000-0000-0000-000000000000", "activated") is False
