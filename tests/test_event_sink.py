import json
import logging
import threading

import pytest

import db
import event_sink


def _event(**overrides):
    event = {
        "type": "generation_completed",
        "userId": "alice",
        "primaryTopics": ["Science", "Science:Physics"],
        "adjacentTopics": ["Astronomy"],
        "generated": 4,
        "saved": 3,
        "duplicates": 1,
        "milestone": 6,
    }
    event.update(overrides)
    return event


@pytest.mark.usefixtures("temp_db")
def test_emit_persists_and_logs_without_dashboard(caplog):
    sink = event_sink.DatabaseEventSink()
    with caplog.at_level(logging.INFO, logger="quizfeed.events"):
        sink.emit(_event())

    stored = db.list_generation_events("alice")
    assert len(stored) == 1
    assert stored[0]["type"] == "generation_completed"
    assert stored[0]["saved"] == 3
    assert stored[0]["payload"]["primaryTopics"] == ["Science", "Science:Physics"]
    assert "createdAt" in stored[0]["payload"]

    logged = json.loads(caplog.records[-1].getMessage())
    assert logged["id"] == stored[0]["id"]
    assert logged["milestone"] == 6


@pytest.mark.usefixtures("temp_db")
def test_emit_forwards_to_dashboard(monkeypatch):
    done = threading.Event()
    calls = []

    async def fake_forward(event, *, url, headers, timeout=5.0, max_attempts=3):
        calls.append((url, event, headers))
        done.set()

    monkeypatch.setattr(event_sink, "_forward_event_with_retry", fake_forward)
    monkeypatch.setenv("DASHBOARD_URL", "https://dashboard.example.com/events")
    monkeypatch.setenv("DASHBOARD_AUTH", "Token abc")

    event_sink.DatabaseEventSink.from_env().emit(_event(type="generation_failed", reason="generation_error"))

    done.wait(0.5)
    assert calls
    url, payload, headers = calls[0]
    assert url == "https://dashboard.example.com/events"
    assert headers["Authorization"] == "Token abc"
    assert headers["Content-Type"] == "application/json"
    assert payload["reason"] == "generation_error"


@pytest.mark.usefixtures("temp_db")
@pytest.mark.parametrize(
    "overrides",
    [{"type": "something_else"}, {"userId": ""}, {"saved": -1}],
)
def test_emit_rejects_malformed_events(overrides):
    with pytest.raises(ValueError):
        event_sink.DatabaseEventSink().emit(_event(**overrides))
    assert db.list_generation_events() == []
