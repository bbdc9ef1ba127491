# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

"""
Runs a request's test script against its response.

Every 'test' line is evaluated on its own: a syntax error, a runtime error
or a false predicate fails that test only and the next one still runs.

    test "Status code is 200", status == 200
    test "Has JSON content", header("Content-Type") contains "json"
    test "Returns the user", body.id exists
    test "User shape", body conforms {"id": "number", "email": "string"}
"""

import json
import logging
import re

from .models import ScriptError, TestReport, TestResult
from .script_parser import COMPARISON_OPS, WORD_OPS, iter_statements, parse_statement
from .script_sandbox import TESTS, Interpreter, check_shape, to_text, type_name

log = logging.getLogger('apirun')

TEST_NAME_RE = re.compile(r"""^test\s+(["'])(.*?)\1""")


def describe(node):
    """Renders simple expressions (names, members, calls) back to text."""
    kind = node[0]
    if kind == 'name':
        return node[1]
    if kind == 'lit':
        return json.dumps(node[1])
    if kind == 'attr':
        return f"{describe(node[1])}.{node[2]}"
    if kind == 'index':
        return f"{describe(node[1])}[{describe(node[2])}]"
    if kind == 'call':
        return f"{node[1]}({', '.join(describe(arg) for arg in node[2])})"
    return 'value'


def show(value):
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return to_text(value)


def evaluate_predicate(interpreter, node):
    """Returns (passed, failure_message) for one test predicate."""
    kind = node[0]

    if kind == 'binop' and (node[1] in COMPARISON_OPS or node[1] in WORD_OPS):
        op = node[1]
        left = interpreter.evaluate(node[2])
        right = interpreter.evaluate(node[3])
        if interpreter.binary(op, left, right):
            return True, None
        if op == 'conforms':
            return False, check_shape(left, right, describe(node[2]))
        return False, f"expected {show(left)} {op} {show(right)}"

    if kind == 'exists':
        if interpreter.evaluate(node) is True:
            return True, None
        return False, f"{describe(node[1])} does not exist"

    if kind == 'is':
        value = interpreter.evaluate(node[1])
        matches = type_name(value) == node[2]
        if matches != node[3]:
            return True, None
        expected = f"not {node[2]}" if node[3] else node[2]
        return False, f"{describe(node[1])} should be {expected}, got {type_name(value)}"

    value = interpreter.evaluate(node)
    if value:
        return True, None
    return False, f"expected a true value, got {show(value)}"


def _run_test(interpreter, stmt, fallback_name):
    interpreter.steps = 0
    try:
        interpreter.check_clock()
        name = to_text(interpreter.evaluate(stmt.exprs[0]))
    except ScriptError as e:
        return TestResult(fallback_name, False, e.message)
    except RecursionError:
        return TestResult(fallback_name, False, "expression nested too deeply")
    except Exception as e:
        return TestResult(fallback_name, False, f"{type(e).__name__}: {e}")

    try:
        passed, message = evaluate_predicate(interpreter, stmt.exprs[1])
    except ScriptError as e:
        return TestResult(name, False, e.message)
    except RecursionError:
        return TestResult(name, False, "expression nested too deeply")
    except Exception as e:
        log.error(f"Error executing test '{name}': {e}", exc_info=True)
        return TestResult(name, False, f"{type(e).__name__}: {e}")
    return TestResult(name, passed, message)


def _name_from_source(text, line):
    match = TEST_NAME_RE.match(text)
    return match.group(2) if match else f"line {line}"


def run_tests(source, context, limits=None):
    """
    Executes a test script and returns a TestReport with one entry per test.
    'let' and 'log' lines may appear between tests. Never raises.
    """
    report = TestReport()
    if not source or not source.strip():
        return report

    interpreter = Interpreter(context, limits, stage=TESTS)
    for line, text in iter_statements(source):
        try:
            stmt = parse_statement(text, line)
        except ScriptError as e:
            report.results.append(TestResult(_name_from_source(text, line), False, f"syntax error: {e.message}"))
            continue
        except RecursionError:
            report.results.append(TestResult(_name_from_source(text, line), False, "syntax error: expression nested too deeply"))
            continue

        if stmt.kind == 'test':
            report.results.append(_run_test(interpreter, stmt, _name_from_source(text, line)))
        elif stmt.kind in ('let', 'log'):
            interpreter.steps = 0
            try:
                interpreter.execute(stmt)
            except ScriptError as e:
                # Tests that use the binding fail on their own
                log.warning(f"Test script line {line}: {e.message}")
            except RecursionError:
                log.warning(f"Test script line {line}: expression nested too deeply")
            except Exception as e:
                log.warning(f"Test script line {line}: {type(e).__name__}: {e}", exc_info=True)
        else:
            report.results.append(TestResult(
                f"line {line}", False, f"'{stmt.kind}' is not allowed in test scripts"
            ))

    for result in report:
        if result.passed:
            log.info(f"  PASSED: {result.name}")
        else:
            log.error(f"  FAILED: {result.name} - {result.message}")
    return report
