# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

"""
Data model shared by the runner: environments, collections, requests and
the per-execution records produced by the pipeline.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from requests.structures import CaseInsensitiveDict

HTTP_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')
BODY_TYPES = ('none', 'json', 'raw', 'form')

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def now_iso():
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


# --- Errors ---

class ApiRunError(Exception):
    """Base class for every error raised by ApiRun."""


class ConfigError(ApiRunError):
    pass


class NotFoundError(ApiRunError):
    def __init__(self, kind, item_id):
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class ResolutionError(ApiRunError):
    """A {{placeholder}} could not be found in any scope."""

    def __init__(self, field, identifier, offset=None):
        location = f"{field}" if offset is None else f"{field} (offset {offset})"
        super().__init__(f"Unresolved variable '{identifier}' in {location}")
        self.field = field
        self.identifier = identifier
        self.offset = offset


class ScriptError(ApiRunError):
    """Raised by the script interpreter; always captured into a ScriptResult."""

    def __init__(self, message, stage=None, line=None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.line = line

    def __str__(self):
        prefix = f"line {self.line}: " if self.line else ""
        return f"{prefix}{self.message}"


class ScriptTimeout(ScriptError):
    pass


class TransportError(ApiRunError):
    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


# --- Long-lived entities ---

@dataclass
class Environment:
    id: str
    name: str
    variables: Dict[str, str] = field(default_factory=dict)
    is_active: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        for key, value in self.variables.items():
            if not isinstance(value, str):
                raise TypeError(f"Environment '{self.name}': value of '{key}' must be a string")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'variables': dict(self.variables),
            'isActive': self.is_active,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }


@dataclass
class HttpRequest:
    id: str
    name: str
    url: str
    method: str = 'GET'
    collection_id: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ''
    body_type: str = 'none'
    pre_script: str = ''
    post_script: str = ''
    tests: str = ''
    path_variables: Dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        self.method = (self.method or 'GET').upper()
        if self.method not in HTTP_METHODS:
            raise ValueError(f"Request '{self.name}': unsupported method {self.method}")
        if self.body_type not in BODY_TYPES:
            raise ValueError(f"Request '{self.name}': unsupported bodyType {self.body_type}")

    def to_dict(self):
        return {
            'id': self.id,
            'collectionId': self.collection_id,
            'name': self.name,
            'method': self.method,
            'url': self.url,
            'headers': dict(self.headers),
            'body': self.body,
            'bodyType': self.body_type,
            'preScript': self.pre_script,
            'postScript': self.post_script,
            'tests': self.tests,
            'pathVariables': dict(self.path_variables),
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }


@dataclass
class Collection:
    id: str
    name: str
    description: str = ''
    requests: List[HttpRequest] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    @property
    def size(self):
        return len(self.requests)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'size': self.size,
            'createdAt': self.created_at,
            'requests': [r.to_dict() for r in self.requests],
        }


# --- Per-execution values ---

@dataclass(frozen=True)
class ResolvedRequest:
    method: str
    url: str
    headers: Dict[str, str]
    body: str
    body_type: str = 'none'


@dataclass
class Response:
    status_code: int
    reason: str = ''
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    text: str = ''
    elapsed_ms: float = 0.0

    def __post_init__(self):
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})

    def json(self):
        return json.loads(self.text)


@dataclass
class ScriptResult:
    ok: bool
    mutations: List[tuple] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    error: Optional[ScriptError] = None


@dataclass
class TestResult:
    __test__ = False

    name: str
    passed: bool
    message: Optional[str] = None


@dataclass
class TestReport:
    __test__ = False

    results: List[TestResult] = field(default_factory=list)

    def __len__(self):
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def __getitem__(self, index):
        return self.results[index]

    @property
    def passed(self):
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self):
        return sum(1 for r in self.results if not r.passed)


class Stage:
    IDLE = 'idle'
    RESOLVING = 'resolving'
    PRE_SCRIPT = 'pre_script'
    SENDING = 'sending'
    POST_SCRIPT = 'post_script'
    TESTING = 'testing'
    DONE = 'done'
    FAILED = 'failed'


class Status:
    SUCCEEDED = 'succeeded'
    SCRIPT_FAILED = 'script_failed'
    TRANSPORT_FAILED = 'transport_failed'
    RESOLUTION_FAILED = 'resolution_failed'


@dataclass
class ExecutionRecord:
    request_id: str
    request_name: str
    state: str = Stage.IDLE
    status: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    resolved: Optional[ResolvedRequest] = None
    response: Optional[Response] = None
    pre_script: Optional[ScriptResult] = None
    post_script: Optional[ScriptResult] = None
    tests: TestReport = field(default_factory=TestReport)
    duration_ms: float = 0.0

    @property
    def passed(self):
        return self.status == Status.SUCCEEDED and self.tests.failed == 0
