from datetime import datetime, timedelta, timezone

import pytest
import requests

from gate_server.models import AccessEvent, RecognitionEvent
from gate_server.services import access_log
from gate_server.services.access_log import HttpAccessLog, InMemoryAccessLog


def make_event(label="Ana|RESIDENT|101", minutes=0, confidence=0.8):
    timestamp = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return AccessEvent.from_recognition(RecognitionEvent(label=label, confidence=confidence, timestamp=timestamp))


class FakeResponse:
    def __init__(self, status_code=201):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


def test_event_from_composite_label():
    event = make_event("Ben|EMPLOYEE|")

    assert event.person_label == "Ben"
    assert event.access_category == "EMPLOYEE"
    assert event.unit_reference == ""
    assert event.method == "FACIAL_RECOGNITION"


def test_in_memory_log_newest_first_and_filtered():
    log = InMemoryAccessLog(max_events=2)
    log.record(make_event(minutes=0))
    log.record(make_event("Ben|EMPLOYEE|", minutes=1))
    log.record(make_event(minutes=2))

    events = log.get_events()
    assert [e.timestamp.minute for e in events] == [2, 1]
    assert [e.person_label for e in log.get_events(person_label="Ana")] == ["Ana"]


def test_http_log_posts_event(monkeypatch):
    calls = []

    def fake_post(url, json, timeout):
        calls.append((url, json, timeout))
        return FakeResponse()

    monkeypatch.setattr(access_log.requests, "post", fake_post)
    log = HttpAccessLog("http://access-log.local/events", timeout=2.0)
    log.record(make_event())

    url, payload, timeout = calls[0]
    assert url == "http://access-log.local/events"
    assert payload["person_label"] == "Ana"
    assert payload["unit_reference"] == "101"
    assert payload["timestamp"].startswith("2024-05-01T08:00:00")
    assert timeout == 2.0


def test_http_log_raises_on_server_error(monkeypatch):
    monkeypatch.setattr(access_log.requests, "post", lambda url, json, timeout: FakeResponse(500))
    log = HttpAccessLog("http://access-log.local/events")

    with pytest.raises(requests.HTTPError):
        log.record(make_event())
    assert len(log.get_events()) == 1
