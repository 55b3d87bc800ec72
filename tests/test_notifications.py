# tests/test_notifications.py
import pytest

from prompt_release.notifications import (
    APPROVAL_NEEDED,
    DEPLOYED,
    NotificationService,
    format_metadata,
)


def test_handlers_receive_notifications_of_their_type():
    service = NotificationService()
    received = []
    service.register_handler(DEPLOYED, received.append)

    service.send(APPROVAL_NEEDED, "ignored")
    sent = service.send(DEPLOYED, "Version 3 is live", version_id="v3")

    assert received == [sent]
    assert sent.title == "Deployment Complete"
    assert sent.metadata == {"version_id": "v3"}


def test_failing_handler_does_not_break_delivery():
    service = NotificationService()
    received = []

    def broken(notification):
        raise RuntimeError("webhook down")

    service.register_handler(DEPLOYED, broken)
    service.register_handler(DEPLOYED, received.append)

    assert service.send(DEPLOYED, "live") is not None
    assert len(received) == 1


def test_unknown_type_is_rejected_at_registration():
    with pytest.raises(ValueError):
        NotificationService().register_handler("party", print)


def test_disabled_service_skips_handlers():
    service = NotificationService(enabled=False)
    received = []
    service.register_handler(DEPLOYED, received.append)
    service.send(DEPLOYED, "live")
    assert received == []


def test_remove_and_clear_handlers():
    service = NotificationService()
    received = []
    service.register_handler(DEPLOYED, received.append)
    service.remove_handler(DEPLOYED, received.append)
    service.send(DEPLOYED, "live")
    assert received == []

    service.register_handler(DEPLOYED, received.append)
    service.clear_handlers()
    service.send(DEPLOYED, "live")
    assert received == []


def test_format_metadata_skips_empty_values():
    text = format_metadata({"version_id": "v1", "reason": None, "tags": ["a"]})
    assert text == 'version id: v1 | tags: ["a"]'
