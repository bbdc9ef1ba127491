"""Tests for run summaries and the HTML report."""

import os

from apirun.log_reporter import generate_html_report, render_execution, summarize
from apirun.models import (
    ExecutionRecord,
    ResolvedRequest,
    Response,
    Stage,
    Status,
    TestReport,
    TestResult,
)


def _make_record(name, status=Status.SUCCEEDED, results=(), error=None, duration=10.0):
    record = ExecutionRecord(request_id=name, request_name=name)
    record.state = Stage.DONE if status != Status.RESOLUTION_FAILED else Stage.FAILED
    record.status = status
    record.error = error
    record.duration_ms = duration
    record.tests = TestReport(list(results))
    if status != Status.RESOLUTION_FAILED:
        record.resolved = ResolvedRequest("GET", f"https://api.example.com/{name}", {"Accept": "*/*"}, "")
        record.response = Response(200, "OK", {"Content-Type": "application/json"}, '{"ok": true}')
    return record


def test_summarize():
    records = [
        _make_record("a", results=[TestResult("t1", True), TestResult("t2", False, "expected 1 == 2")]),
        _make_record("b", status=Status.RESOLUTION_FAILED, error="Unresolved variable 'baseUrl' in url"),
    ]
    summary = summarize(records)
    assert summary == {
        "total": 2,
        "succeeded": 1,
        "failed": 1,
        "tests_passed": 1,
        "tests_failed": 1,
        "duration_ms": 20.0,
    }


def test_render_escapes_and_shows_failures():
    record = _make_record(
        "<script>",
        results=[TestResult("status <ok>", False, "expected 500 == 200")],
    )
    html = render_execution(record)
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "status &lt;ok&gt; - expected 500 == 200" in html
    assert 'class="passed"' not in html


def test_render_resolution_failure():
    record = _make_record("b", status=Status.RESOLUTION_FAILED, error="Unresolved variable 'baseUrl' in url")
    html = render_execution(record)
    assert "No tests were executed" in html
    assert "Unresolved variable &#x27;baseUrl&#x27; in url" in html
    assert "N/A" in html


def test_generate_html_report(tmp_path):
    output = str(tmp_path / "reports" / "report.html")
    records = [_make_record("users", results=[TestResult("ok", True)])]
    assert generate_html_report("Users API", records, output) == output
    assert os.path.exists(output)
    with open(output, encoding="utf-8") as f:
        content = f.read()
    assert "Execution Report - Users API" in content
    assert "https://api.example.com/users" in content
    assert "&#10004; ok" in content
