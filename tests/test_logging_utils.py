from trailexport.exporter import logging_utils


def test_export_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._export_event("state", phase="pacing", kind="escalate")

    assert events
    line = events[-1]
    assert line.startswith("[EXPORTER][STATE]")
    assert "phase='pacing'" in line
    assert "kind='escalate'" in line


def test_phase_alone_becomes_label(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._export_event(phase="queue", pending=3)

    assert events[-1] == "[EXPORTER][QUEUE] pending=3"


def test_logging_failure_is_swallowed(monkeypatch):
    def _broken(msg: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(logging_utils, "log_line", _broken)
    logging_utils._export_event("error", phase="store")


def test_untagged_event_gets_generic_tag(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", events.append)

    logging_utils._export_event(url="https://www.alltrails.com/", ok=True)

    assert events == ["[EXPORTER][EVENT] ok=True, url='https://www.alltrails.com/'"]
