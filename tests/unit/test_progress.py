import itertools
import math

from aqmesh.runtime import progress
from aqmesh.runtime.progress import ProgressReporter


def test_eta_waits_for_samples(monkeypatch) -> None:
    ticks = itertools.count()
    monkeypatch.setattr(progress.time, "monotonic", lambda: float(next(ticks)))
    reporter = ProgressReporter(10, enabled=False)
    reporter.advance()
    reporter.advance()
    assert math.isnan(reporter.eta_seconds())
    reporter.advance()
    assert reporter.done == 3
    assert reporter.eta_seconds() == 7.0


def test_renders_only_when_enabled(capsys) -> None:
    reporter = ProgressReporter(2, enabled=True, label="rows")
    reporter.advance(2)
    assert "2/2 rows" in capsys.readouterr().out
    quiet = ProgressReporter(2, enabled=False)
    quiet.advance(2)
    assert capsys.readouterr().out == ""


def test_empty_work_never_renders(capsys) -> None:
    reporter = ProgressReporter(0, enabled=True)
    reporter.advance()
    assert capsys.readouterr().out == ""


def test_format_eta() -> None:
    assert progress._format_eta(float("nan")) == "ETA ?"
    assert progress._format_eta(30.0) == "ETA 30s"
    assert progress._format_eta(90.0) == "ETA 1.5m"
    assert progress._format_eta(7200.0) == "ETA 2.0h"
