# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import html
import json
import logging
import os
from datetime import datetime

from .models import Status

log = logging.getLogger('apirun')

HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Execution Report - {title}</title>
    <style>
        body {{ font-family: -apple-system, "Segoe UI", Roboto, Arial, sans-serif; background: #f4f7f9; color: #333; margin: 0; }}
        .container {{ max-width: 1100px; margin: 20px auto; padding: 20px; background: #fff; border-radius: 10px; }}
        h1 {{ color: #2c3e50; border-bottom: 2px solid #e0e0e0; padding-bottom: 10px; }}
        .summary {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(140px, 1fr)); gap: 16px; margin: 24px 0; }}
        .card {{ padding: 16px; border-radius: 8px; color: #fff; text-align: center; }}
        .card .value {{ font-size: 2em; font-weight: 700; display: block; }}
        .blue {{ background: #2980b9; }} .green {{ background: #27ae60; }}
        .red {{ background: #c0392b; }} .yellow {{ background: #f39c12; }}
        details {{ border: 1px solid #e0e0e0; border-left: 5px solid #2ecc71; border-radius: 5px; margin-bottom: 12px; }}
        details.failed {{ border-left-color: #e74c3c; }}
        details.error {{ border-left-color: #f39c12; }}
        summary {{ padding: 12px; cursor: pointer; display: grid; grid-template-columns: 80px 1fr 140px 90px; gap: 12px; }}
        .method {{ font-weight: bold; }}
        .content {{ padding: 0 16px 16px; }}
        pre {{ background: #f8f9fa; padding: 10px; border-radius: 4px; white-space: pre-wrap; word-break: break-all; }}
        li.passed {{ color: #27ae60; }} li.failed {{ color: #c0392b; }}
    </style>
</head>
<body>
<div class="container">
    <h1>{title}</h1>
    <p>Executed on {execution_date} &middot; total time {total_time} ms</p>
    <div class="summary">
        <div class="card blue"><span class="value">{total_requests}</span>Requests</div>
        <div class="card green"><span class="value">{succeeded}</span>Succeeded</div>
        <div class="card red"><span class="value">{failed}</span>Failed</div>
        <div class="card green"><span class="value">{passed_tests}</span>Tests passed</div>
        <div class="card yellow"><span class="value">{failed_tests}</span>Tests failed</div>
    </div>
    {executions_html}
</div>
</body>
</html>
"""


def summarize(records):
    """Counts requests and assertions over a list of ExecutionRecords."""
    summary = {
        'total': len(records),
        'succeeded': 0,
        'failed': 0,
        'tests_passed': 0,
        'tests_failed': 0,
        'duration_ms': 0.0,
    }
    for record in records:
        if record.status == Status.SUCCEEDED:
            summary['succeeded'] += 1
        else:
            summary['failed'] += 1
        summary['tests_passed'] += record.tests.passed
        summary['tests_failed'] += record.tests.failed
        summary['duration_ms'] += record.duration_ms
    summary['duration_ms'] = round(summary['duration_ms'], 2)
    return summary


def _pre(text, empty):
    return f"<pre>{html.escape(text)}</pre>" if text else f"<pre>{empty}</pre>"


def _format_body(text):
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return text


def render_execution(record):
    if record.status == Status.SUCCEEDED and record.tests.failed == 0:
        css = 'passed'
    elif record.status == Status.SCRIPT_FAILED:
        css = 'error'
    else:
        css = 'failed'

    resolved = record.resolved
    method = resolved.method if resolved else 'N/A'
    url = resolved.url if resolved else ''
    response = record.response
    status_text = f"{response.status_code} {response.reason}" if response else record.status

    if len(record.tests):
        tests_html = ''.join(
            f"<li class='{'passed' if t.passed else 'failed'}'>"
            f"{'&#10004;' if t.passed else '&#10060;'} {html.escape(t.name)}"
            f"{'' if t.passed else ' - ' + html.escape(t.message or '')}</li>"
            for t in record.tests
        )
    else:
        tests_html = "<li>No tests were executed for this request.</li>"

    errors_html = ''
    for label, result in (('Pre-script', record.pre_script), ('Post-script', record.post_script)):
        if result is not None and not result.ok:
            errors_html += f"<h4>{label} Error</h4>{_pre(str(result.error), '')}"
    if record.error and record.status in (Status.RESOLUTION_FAILED, Status.TRANSPORT_FAILED):
        errors_html += f"<h4>Error</h4>{_pre(record.error, '')}"

    req_headers = '\n'.join(f"{k}: {v}" for k, v in resolved.headers.items()) if resolved else ''
    resp_headers = '\n'.join(f"{k}: {v}" for k, v in response.headers.items()) if response else ''

    return f"""
    <details class="{css}">
        <summary>
            <span class="method">{html.escape(method)}</span>
            <span>{html.escape(record.request_name)}</span>
            <span>{html.escape(status_text or '')}</span>
            <span>{record.duration_ms:.0f} ms</span>
        </summary>
        <div class="content">
            <h4>Tests</h4>
            <ul>{tests_html}</ul>
            {errors_html}
            <h4>Request</h4>
            {_pre(url, 'N/A')}
            {_pre(req_headers, 'No headers.')}
            {_pre(resolved.body if resolved else '', 'No request body.')}
            <h4>Response</h4>
            {_pre(resp_headers, 'N/A')}
            {_pre(_format_body(response.text) if response else '', 'No response body.')}
        </div>
    </details>
    """


def generate_html_report(title, records, output_path):
    """Writes a self-contained HTML report for a run and returns its path."""
    summary = summarize(records)
    final_html = HTML_TEMPLATE.format(
        title=html.escape(title),
        execution_date=datetime.now().strftime("%d/%m/%Y %H:%M:%S"),
        total_time=f"{summary['duration_ms']:.0f}",
        total_requests=summary['total'],
        succeeded=summary['succeeded'],
        failed=summary['failed'],
        passed_tests=summary['tests_passed'],
        failed_tests=summary['tests_failed'],
        executions_html=''.join(render_execution(r) for r in records),
    )
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(final_html)
    log.info(f"HTML report successfully generated at: {output_path}")
    return output_path
