# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

"""
Runs pre-request and post-response scripts.

Scripts are parsed by script_parser and evaluated here by walking the
tree. A script can only see the resolved request, the response and the
active environment; there is no access to files, the network or Python
itself. Every run has a step budget and a wall-clock deadline.
"""

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

from requests.structures import CaseInsensitiveDict

from .models import ScriptError, ScriptResult, ScriptTimeout
from .script_helpers import ScriptHelpers
from .script_parser import parse_script

log = logging.getLogger('apirun')

PRE_SCRIPT = 'pre_script'
POST_SCRIPT = 'post_script'
TESTS = 'tests'

RESPONSE_NAMES = ('status', 'reason', 'headers', 'body', 'text', 'elapsed')

# Check the clock every N evaluation steps
CLOCK_INTERVAL = 64


class _Undefined:
    """Value of a missing member, index or variable."""

    def __repr__(self):
        return 'undefined'

    def __bool__(self):
        return False


UNDEFINED = _Undefined()


@dataclass
class ScriptLimits:
    timeout: float = 1.0
    max_steps: int = 20000


class EnvironmentScope:
    """
    The active environment as seen by one script run.

    Writes are staged and only reach the VariableStore on commit(), so a
    script that fails part way leaves the environment untouched.
    """

    def __init__(self, store=None, environment_id=None):
        self.store = store
        self.environment_id = environment_id
        self._staged = {}
        self._mutations = []

    @property
    def available(self):
        return self.store is not None and self.environment_id is not None

    def get(self, name):
        if name in self._staged:
            return self._staged[name]
        if not self.available:
            return None
        return self.store.get_variable(self.environment_id, name)

    def set(self, name, value):
        if not self.available:
            raise ScriptError(f"cannot set '{name}': no active environment")
        if not isinstance(value, str):
            raise ScriptError(f"environment values must be strings, got {type_name(value)}")
        self._staged[name] = value
        self._mutations.append(('set', name, value))

    def unset(self, name):
        if not self.available:
            raise ScriptError(f"cannot unset '{name}': no active environment")
        self._staged[name] = None
        self._mutations.append(('unset', name, None))

    def commit(self):
        """Applies staged writes and returns them; clears the stage."""
        mutations = self._mutations
        if mutations:
            self.store.apply(self.environment_id, mutations)
        self.discard()
        return mutations

    def discard(self):
        self._staged = {}
        self._mutations = []


class ScriptContext:
    """Everything a script may observe: request, response and environment."""

    def __init__(self, request, response=None, environment=None, helpers=None):
        self.request = request
        self.response = response
        self.environment = environment or EnvironmentScope()
        self.helpers = helpers or ScriptHelpers()


class EnvView:
    """Read-only view of the environment for 'env.name' / 'env["name"]'."""

    def __init__(self, scope):
        self.scope = scope

    def lookup(self, name):
        value = self.scope.get(name)
        return UNDEFINED if value is None else value


# --- Value helpers ---

def type_name(value):
    if value is UNDEFINED:
        return 'undefined'
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, list):
        return 'array'
    if isinstance(value, (Mapping, EnvView)):
        return 'object'
    return type(value).__name__


def is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_text(value):
    """String form used by 'set', 'log' and str()."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return 'null'
    if value is UNDEFINED:
        return 'undefined'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list)):
        return json.dumps(to_plain(value), ensure_ascii=False, separators=(',', ':'))
    return str(value)


def to_plain(value):
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


def strict_equals(left, right):
    if left is UNDEFINED or right is UNDEFINED:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return left == right
    if type_name(left) != type_name(right):
        return False
    return to_plain(left) == to_plain(right)


def check_shape(value, shape, path='body'):
    """
    Returns None when 'value' matches 'shape', otherwise a description of
    the first mismatch. A shape is a type name ("number", "string?" for an
    optional field, "any"), an object of shapes, or a one-item array.
    """
    if isinstance(shape, str):
        expected = shape.rstrip('?')
        if expected == 'any':
            return None if value is not UNDEFINED else f"{path} is missing"
        if expected not in ('string', 'number', 'boolean', 'array', 'object', 'null'):
            raise ScriptError(f"unknown type {shape!r} in shape")
        if type_name(value) != expected:
            return f"{path} should be {expected}, got {type_name(value)}"
        return None
    if isinstance(shape, Mapping):
        if not isinstance(value, Mapping):
            return f"{path} should be object, got {type_name(value)}"
        for key, sub_shape in shape.items():
            optional = isinstance(sub_shape, str) and sub_shape.endswith('?')
            if key not in value:
                if optional:
                    continue
                return f"{path}.{key} is missing"
            problem = check_shape(value[key], sub_shape, f"{path}.{key}")
            if problem:
                return problem
        return None
    if isinstance(shape, list):
        if not isinstance(value, list):
            return f"{path} should be array, got {type_name(value)}"
        if len(shape) > 1:
            raise ScriptError("array shapes take a single item shape")
        for i, item in enumerate(value):
            problem = check_shape(item, shape[0], f"{path}[{i}]") if shape else None
            if problem:
                return problem
        return None
    raise ScriptError(f"invalid shape {to_text(shape)}")


# --- Interpreter ---

class Interpreter:
    """Evaluates parsed statements against a ScriptContext."""

    def __init__(self, context, limits=None, stage=POST_SCRIPT):
        self.context = context
        self.limits = limits or ScriptLimits()
        self.stage = stage
        self.locals = {}
        self.logs = []
        self.steps = 0
        self.deadline = time.monotonic() + self.limits.timeout
        self._body = None
        self.builtins = {
            'get': self._fn_get,
            'header': self._fn_header,
            'len': self._fn_len,
            'str': to_text,
            'int': self._fn_int,
            'float': self._fn_float,
            'lower': lambda s: self._string(s, 'lower').lower(),
            'upper': lambda s: self._string(s, 'upper').upper(),
            'trim': lambda s: self._string(s, 'trim').strip(),
            'startswith': lambda s, p: self._string(s, 'startswith').startswith(self._string(p, 'startswith')),
            'endswith': lambda s, p: self._string(s, 'endswith').endswith(self._string(p, 'endswith')),
            'keys': self._fn_keys,
            'json_parse': self._fn_json_parse,
            'json_dump': lambda v: json.dumps(to_plain(v), ensure_ascii=False),
        }
        self.builtins.update(self.context.helpers.builtins())

    # --- budget ---

    def tick(self):
        self.steps += 1
        if self.steps > self.limits.max_steps:
            raise ScriptTimeout(f"Timeout: script exceeded {self.limits.max_steps} evaluation steps")
        if self.steps % CLOCK_INTERVAL == 0:
            self.check_clock()

    def check_clock(self):
        if time.monotonic() > self.deadline:
            raise ScriptTimeout(f"Timeout: script exceeded {self.limits.timeout}s")

    # --- statements ---

    def execute(self, stmt):
        self.check_clock()
        try:
            self._execute(stmt)
        except ScriptError as e:
            if e.line is None:
                e.line = stmt.line
            e.stage = self.stage
            raise

    def _execute(self, stmt):
        kind = stmt.kind
        if kind == 'let':
            self.locals[stmt.target] = self.evaluate(stmt.exprs[0])
        elif kind == 'set':
            value = self.evaluate(stmt.exprs[0])
            if value is UNDEFINED or value is None:
                raise ScriptError(f"cannot set '{stmt.target}' to {to_text(value)}")
            self.context.environment.set(stmt.target, to_text(value))
        elif kind == 'unset':
            self.context.environment.unset(stmt.target)
        elif kind == 'assert':
            if not self.evaluate(stmt.exprs[0]):
                message = to_text(self.evaluate(stmt.exprs[1])) if len(stmt.exprs) > 1 else 'assertion failed'
                raise ScriptError(message)
        elif kind == 'log':
            line = ' '.join(to_text(self.evaluate(e)) for e in stmt.exprs)
            self.logs.append(line)
            log.debug(f"[{self.stage}] {line}")
        else:
            raise ScriptError(f"'{kind}' is only allowed in test scripts")

    # --- expressions ---

    def evaluate(self, node):
        self.tick()
        kind = node[0]

        if kind == 'lit':
            return node[1]
        if kind == 'name':
            return self.lookup(node[1])
        if kind == 'list':
            return [self.evaluate(item) for item in node[1]]
        if kind == 'object':
            return {key: self.evaluate(value) for key, value in node[1]}
        if kind == 'attr':
            return self.member(self.evaluate(node[1]), node[2])
        if kind == 'index':
            return self.index(self.evaluate(node[1]), self.evaluate(node[2]))
        if kind == 'call':
            return self.call(node[1], [self.evaluate(arg) for arg in node[2]])
        if kind == 'neg':
            value = self.evaluate(node[1])
            if not is_number(value):
                raise ScriptError(f"cannot negate {type_name(value)}")
            return -value
        if kind == 'not':
            return not self.evaluate(node[1])
        if kind == 'and':
            left = self.evaluate(node[1])
            return self.evaluate(node[2]) if left else left
        if kind == 'or':
            left = self.evaluate(node[1])
            return left if left else self.evaluate(node[2])
        if kind == 'exists':
            return self.evaluate(node[1]) is not UNDEFINED
        if kind == 'is':
            matches = type_name(self.evaluate(node[1])) == node[2]
            return not matches if node[3] else matches
        if kind == 'binop':
            return self.binary(node[1], self.evaluate(node[2]), self.evaluate(node[3]))
        raise ScriptError(f"unknown expression {kind}")

    def lookup(self, name):
        if name in self.locals:
            return self.locals[name]
        if name == 'env':
            return EnvView(self.context.environment)
        if name == 'request':
            return self.request_value()
        if name in RESPONSE_NAMES:
            return self.response_value(name)
        raise ScriptError(f"undefined name '{name}'")

    def request_value(self):
        req = self.context.request
        if req is None:
            return UNDEFINED
        return {
            'method': req.method,
            'url': req.url,
            'headers': CaseInsensitiveDict(req.headers),
            'body': req.body,
        }

    def response_value(self, name):
        response = self.context.response
        if response is None:
            raise ScriptError(f"'{name}' is not available: there is no response yet")
        if name == 'status':
            return response.status_code
        if name == 'reason':
            return response.reason
        if name == 'headers':
            return response.headers
        if name == 'text':
            return response.text
        if name == 'elapsed':
            return response.elapsed_ms
        if self._body is None:
            try:
                self._body = (response.json(),)
            except ValueError:
                self._body = (UNDEFINED,)
        return self._body[0]

    def member(self, obj, name):
        if isinstance(obj, EnvView):
            return obj.lookup(name)
        if isinstance(obj, Mapping):
            return obj.get(name, UNDEFINED)
        if name == 'length' and isinstance(obj, (list, str)):
            return len(obj)
        return UNDEFINED

    def index(self, obj, key):
        if obj is UNDEFINED or obj is None:
            return UNDEFINED
        if isinstance(obj, EnvView):
            return obj.lookup(self._string(key, 'env[]'))
        if isinstance(obj, Mapping):
            if not isinstance(key, str):
                raise ScriptError(f"object keys must be strings, got {type_name(key)}")
            return obj.get(key, UNDEFINED)
        if isinstance(obj, (list, str)):
            if not is_number(key) or int(key) != key:
                raise ScriptError(f"{type_name(obj)} index must be an integer, got {type_name(key)}")
            key = int(key)
            return obj[key] if 0 <= key < len(obj) else UNDEFINED
        raise ScriptError(f"cannot index {type_name(obj)}")

    def call(self, name, args):
        func = self.builtins.get(name)
        if func is None:
            raise ScriptError(f"unknown function '{name}'")
        try:
            return func(*args)
        except (TypeError, ValueError, OverflowError) as e:
            raise ScriptError(f"{name}(): {e}")

    def binary(self, op, left, right):
        if op == '==':
            return strict_equals(left, right)
        if op == '!=':
            return not strict_equals(left, right)
        if op in ('<', '<=', '>', '>='):
            return self._order(op, left, right)
        if op == 'in':
            return self._contains(right, left)
        if op == 'contains':
            return self._contains(left, right)
        if op == 'conforms':
            return check_shape(left, right) is None
        if op == '+':
            if isinstance(left, str) or isinstance(right, str):
                if left is UNDEFINED or right is UNDEFINED:
                    raise ScriptError("cannot concatenate an undefined value")
                return to_text(left) + to_text(right)
            if isinstance(left, list) and isinstance(right, list):
                return left + right
        if op in ('+', '-', '*', '/'):
            if not (is_number(left) and is_number(right)):
                raise ScriptError(f"cannot apply '{op}' to {type_name(left)} and {type_name(right)}")
            if op == '+':
                return left + right
            if op == '-':
                return left - right
            if op == '*':
                return left * right
            if right == 0:
                raise ScriptError("division by zero")
            return left / right
        raise ScriptError(f"unknown operator {op}")

    def _order(self, op, left, right):
        if left is UNDEFINED or right is UNDEFINED:
            return False
        if not ((is_number(left) and is_number(right)) or
                (isinstance(left, str) and isinstance(right, str))):
            raise ScriptError(f"cannot compare {type_name(left)} and {type_name(right)}")
        if op == '<':
            return left < right
        if op == '<=':
            return left <= right
        if op == '>':
            return left > right
        return left >= right

    def _contains(self, container, item):
        if container is UNDEFINED or container is None:
            return False
        if isinstance(container, str):
            return isinstance(item, str) and item in container
        if isinstance(container, list):
            return any(strict_equals(element, item) for element in container)
        if isinstance(container, EnvView):
            return isinstance(item, str) and container.lookup(item) is not UNDEFINED
        if isinstance(container, Mapping):
            return isinstance(item, str) and item in container
        raise ScriptError(f"cannot search in {type_name(container)}")

    # --- builtins ---

    def _string(self, value, func):
        if not isinstance(value, str):
            raise ScriptError(f"{func}() expects a string, got {type_name(value)}")
        return value

    def _fn_get(self, name):
        value = self.context.environment.get(self._string(name, 'get'))
        return UNDEFINED if value is None else value

    def _fn_header(self, name):
        response = self.context.response
        if response is None:
            raise ScriptError("header() is not available: there is no response yet")
        value = response.headers.get(self._string(name, 'header'))
        return UNDEFINED if value is None else value

    def _fn_len(self, value):
        if isinstance(value, (str, list, Mapping)):
            return len(value)
        raise ScriptError(f"len() of {type_name(value)}")

    def _fn_int(self, value):
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            raise ScriptError(f"int() cannot convert {to_text(value)!r}")

    def _fn_float(self, value):
        try:
            return float(value)
        except (TypeError, ValueError, OverflowError):
            raise ScriptError(f"float() cannot convert {to_text(value)!r}")

    def _fn_keys(self, value):
        if isinstance(value, Mapping):
            return list(value.keys())
        raise ScriptError(f"keys() of {type_name(value)}")

    def _fn_json_parse(self, value):
        try:
            return json.loads(self._string(value, 'json_parse'))
        except ValueError as e:
            raise ScriptError(f"json_parse(): {e}")


def run_script(source, context, stage=POST_SCRIPT, limits=None):
    """
    Executes a pre-request or post-response script.
    Never raises: errors and timeouts are returned in the ScriptResult.
    """
    if not source or not source.strip():
        return ScriptResult(ok=True)

    interpreter = Interpreter(context, limits, stage)
    try:
        # A syntax error anywhere means no statement runs
        statements = parse_script(source)
        for stmt in statements:
            interpreter.execute(stmt)
        mutations = context.environment.commit()
    except ScriptError as e:
        e.stage = stage
        context.environment.discard()
        log.error(f"Error executing script ({stage}): {e}")
        return ScriptResult(ok=False, logs=interpreter.logs, error=e)
    except RecursionError:
        context.environment.discard()
        error = ScriptError("expression nested too deeply", stage=stage)
        log.error(f"Error executing script ({stage}): {error}")
        return ScriptResult(ok=False, logs=interpreter.logs, error=error)
    except Exception as e:
        context.environment.discard()
        error = ScriptError(f"{type(e).__name__}: {e}", stage=stage)
        log.error(f"Error executing script ({stage}): {error}", exc_info=True)
        return ScriptResult(ok=False, logs=interpreter.logs, error=error)

    if mutations:
        log.info(f"Environment variables were modified by the {stage.replace('_', '-')}: "
                 f"{', '.join(name for _, name, _ in mutations)}")
    return ScriptResult(ok=True, mutations=mutations, logs=interpreter.logs)
