"""Tests for the request pipeline, collection runs and configuration."""

import json
import threading

import pytest

from apirun.core_logic import (
    execute_request,
    load_config,
    run_collection,
    run_collections,
    script_limits,
)
from apirun.models import (
    ConfigError,
    HttpRequest,
    Response,
    Stage,
    Status,
    TransportError,
)
from apirun.storage import MemoryStore, seed_store
from apirun.transport import Transport
from apirun.variable_store import VariableStore


class FakeTransport(Transport):
    """Returns canned responses and records every resolved request."""

    def __init__(self, status=200, body=None, error=None, on_send=None):
        self.status = status
        self.body = body if body is not None else {}
        self.error = error
        self.on_send = on_send
        self.sent = []

    def send(self, resolved):
        self.sent.append(resolved)
        if self.on_send:
            self.on_send(resolved)
        if self.error:
            raise self.error
        return Response(
            status_code=self.status,
            reason="OK",
            headers={"Content-Type": "application/json"},
            text=json.dumps(self.body),
        )


def _make_store():
    return VariableStore(seed_store(MemoryStore()))


def _make_request(**kwargs):
    defaults = {"id": "r1", "name": "Request", "url": "{{baseUrl}}/items"}
    defaults.update(kwargs)
    return HttpRequest(**defaults)


def _seed_request(store, request_id):
    return store.storage.get_request("1", request_id)


# --- execute_request ---

def test_get_user_profile_resolves_and_sets_user_id():
    store = _make_store()
    transport = FakeTransport(body={"id": 123})
    record = execute_request(_seed_request(store, "1_req_1"), store, "1", transport)

    sent = transport.sent[0]
    assert sent.url == "https://api-dev.example.com/users/123"
    assert sent.headers["Authorization"] == "Bearer dev-token-123"
    assert record.state == Stage.DONE
    assert record.status == Status.SUCCEEDED
    assert record.passed
    assert record.post_script.mutations == [("set", "userId", "123")]
    assert store.get_variable("1", "userId") == "123"
    assert [(t.name, t.passed) for t in record.tests] == [("Status code is 200", True)]


def test_failed_test_does_not_change_status():
    store = _make_store()
    record = execute_request(_seed_request(store, "1_req_2"), store, "1", FakeTransport(status=200, body={"id": 9}))
    assert record.status == Status.SUCCEEDED
    assert not record.passed
    assert record.tests[0].message == "expected 200 == 201"
    assert record.tests[1].passed


def test_resolution_failure_skips_sending():
    storage = MemoryStore()
    storage.create_environment("Empty", id="empty", is_active=True)
    store = VariableStore(storage)
    transport = FakeTransport()
    record = execute_request(_make_request(), store, "empty", transport)

    assert transport.sent == []
    assert record.state == Stage.FAILED
    assert record.failed_stage == Stage.RESOLVING
    assert record.status == Status.RESOLUTION_FAILED
    assert "baseUrl" in record.error
    assert record.response is None


def test_no_active_environment_uses_path_variables_only():
    transport = FakeTransport()
    request = _make_request(url="https://x.test/{{id}}", path_variables={"id": "5"})
    record = execute_request(request, VariableStore(MemoryStore()), None, transport)
    assert record.status == Status.SUCCEEDED
    assert transport.sent[0].url == "https://x.test/5"


def test_transport_failure_skips_scripts_and_tests():
    store = _make_store()
    transport = FakeTransport(error=TransportError("ConnectionError: refused"))
    request = _make_request(post_script='set seen = "yes"', tests='test "ok", true')
    record = execute_request(request, store, "1", transport)

    assert record.state == Stage.FAILED
    assert record.failed_stage == Stage.SENDING
    assert record.status == Status.TRANSPORT_FAILED
    assert record.post_script is None
    assert len(record.tests) == 0
    assert store.get_variable("1", "seen") is None


def test_post_script_failure_still_runs_tests():
    store = _make_store()
    request = _make_request(
        post_script='set partial = "x"\nassert body.id exists, "no id"',
        tests='test "Status code is 200", status == 200',
    )
    record = execute_request(request, store, "1", FakeTransport(body={}))

    assert record.state == Stage.DONE
    assert record.status == Status.SCRIPT_FAILED
    assert str(record.post_script.error) == "line 2: no id"
    assert record.tests[0].passed
    assert store.get_variable("1", "partial") is None


def test_pre_script_changes_apply_to_the_same_request():
    store = _make_store()
    transport = FakeTransport()
    request = _make_request(
        url="{{baseUrl}}/items/{{itemId}}",
        pre_script='set itemId = "42"',
    )
    store.set_variable("1", "itemId", "1")
    record = execute_request(request, store, "1", transport)

    assert transport.sent[0].url == "https://api-dev.example.com/items/42"
    assert record.resolved.url == "https://api-dev.example.com/items/42"
    assert record.status == Status.SUCCEEDED


def test_pre_script_unset_keeps_first_resolution():
    store = _make_store()
    transport = FakeTransport()
    request = _make_request(pre_script="unset baseUrl")
    record = execute_request(request, store, "1", transport)

    assert transport.sent[0].url == "https://api-dev.example.com/items"
    assert record.status == Status.SUCCEEDED


def test_pre_script_failure_is_recorded_and_request_sent():
    store = _make_store()
    transport = FakeTransport()
    request = _make_request(pre_script='set a = "1"\nlog status')
    record = execute_request(request, store, "1", transport)

    assert len(transport.sent) == 1
    assert record.state == Stage.DONE
    assert record.status == Status.SCRIPT_FAILED
    assert not record.pre_script.ok
    assert store.get_variable("1", "a") is None


def test_empty_tests_give_empty_report():
    record = execute_request(_make_request(), _make_store(), "1", FakeTransport())
    assert len(record.tests) == 0
    assert record.passed


def test_unexpected_exception_fails_current_stage():
    def explode(resolved):
        raise RuntimeError("boom")

    record = execute_request(_make_request(), _make_store(), "1", FakeTransport(on_send=explode))
    assert record.state == Stage.FAILED
    assert record.failed_stage == Stage.SENDING
    assert record.status == Status.TRANSPORT_FAILED
    assert "RuntimeError: boom" in record.error


@pytest.mark.parametrize("pre_script, message", [
    ("let x = " + "not " * 3000 + "true", "nested too deeply"),
    ("let x = " + "9" * 5000, "number literal too long"),
])
def test_unparseable_pre_script_is_recorded_and_request_sent(pre_script, message):
    transport = FakeTransport()
    record = execute_request(_make_request(pre_script=pre_script), _make_store(), "1", transport)

    assert len(transport.sent) == 1
    assert record.state == Stage.DONE
    assert record.status == Status.SCRIPT_FAILED
    assert message in str(record.pre_script.error)


def test_overflowing_conversion_in_tests_keeps_the_report():
    request = _make_request(tests=(
        'test "before", status == 201\n'
        'let x = int(float("inf"))\n'
        'test "after", status == 201\n'
    ))
    record = execute_request(request, _make_store(), "1", FakeTransport(status=201))

    assert record.state == Stage.DONE
    assert record.status == Status.SUCCEEDED
    assert [(t.name, t.passed) for t in record.tests] == [("before", True), ("after", True)]


def test_record_has_duration():
    record = execute_request(_make_request(), _make_store(), "1", FakeTransport())
    assert record.duration_ms >= 0


# --- run_collection ---

def test_collection_mutations_flow_to_next_request():
    storage = MemoryStore()
    storage.create_environment("Dev", id="dev", is_active=True, variables={"baseUrl": "https://x.test"})
    collection = storage.create_collection("Flow", id="flow", requests=[
        {"id": "login", "name": "Login", "url": "{{baseUrl}}/login", "method": "POST",
         "post_script": "set token = body.token"},
        {"id": "me", "name": "Me", "url": "{{baseUrl}}/me",
         "headers": {"Authorization": "Bearer {{token}}"}},
    ])
    store = VariableStore(storage)
    transport = FakeTransport(body={"token": "abc"})

    records = run_collection(collection, store, "dev", transport)
    assert [r.status for r in records] == [Status.SUCCEEDED, Status.SUCCEEDED]
    assert transport.sent[1].headers["Authorization"] == "Bearer abc"


def test_literal_set_is_visible_to_next_request_only():
    storage = MemoryStore()
    storage.create_environment("Dev", id="dev", is_active=True)
    collection = storage.create_collection("Users", requests=[
        {"name": "A", "url": "https://api.example.com/start", "post_script": 'set userId = "123"'},
        {"name": "B", "url": "https://api.example.com/users/{{userId}}"},
    ])
    store = VariableStore(storage)

    records = run_collection(collection, store, "dev", FakeTransport())
    assert records[0].resolved.url == "https://api.example.com/start"
    assert records[1].resolved.url == "https://api.example.com/users/123"


def test_collection_continues_after_failure():
    store = _make_store()
    collection = store.storage.create_collection("Mixed", requests=[
        {"name": "Broken", "url": "{{missing}}/x"},
        {"name": "Fine", "url": "{{baseUrl}}/ok"},
    ])
    records = run_collection(collection, store, "1", FakeTransport())
    assert [r.status for r in records] == [Status.RESOLUTION_FAILED, Status.SUCCEEDED]


def test_cancel_between_requests():
    store = _make_store()
    collection = store.storage.get_collection("1")
    cancel = threading.Event()
    transport = FakeTransport(body={"id": 1}, on_send=lambda resolved: cancel.set())

    records = run_collection(collection, store, "1", transport, cancel_event=cancel)
    assert len(records) == 1
    assert len(transport.sent) == 1
    assert records[0].state == Stage.DONE


def test_run_collections_isolates_environments():
    storage = MemoryStore()
    storage.create_environment("Dev", id="dev", is_active=True, variables={"baseUrl": "https://x.test"})
    first = storage.create_collection("A", requests=[
        {"name": "Set A", "url": "{{baseUrl}}/a", "post_script": 'set owner = "a"'},
    ])
    second = storage.create_collection("B", requests=[
        {"name": "Set B", "url": "{{baseUrl}}/b", "post_script": 'set owner = "b"'},
    ])
    store = VariableStore(storage)

    results = run_collections([(first, "dev"), (second, "dev")], store, FakeTransport(), max_workers=2)
    assert [len(records) for records in results] == [1, 1]
    assert all(records[0].status == Status.SUCCEEDED for records in results)
    assert store.get_variable("dev", "owner") is None


def test_run_collections_shared_store():
    storage = MemoryStore()
    storage.create_environment("Dev", id="dev", is_active=True, variables={"baseUrl": "https://x.test"})
    collection = storage.create_collection("A", requests=[
        {"name": "Set A", "url": "{{baseUrl}}/a", "post_script": 'set owner = "a"'},
    ])
    store = VariableStore(storage)
    run_collections([(collection, "dev")], store, FakeTransport(), shared=True)
    assert store.get_variable("dev", "owner") == "a"


# --- configuration ---

def test_load_config_defaults(tmp_path):
    config = load_config(str(tmp_path))
    assert config["SCRIPT_TIMEOUT"] == 1.0
    assert config["LOG_DIR"] == "logs"
    limits = script_limits(config)
    assert limits.timeout == 1.0
    assert limits.max_steps == 20000


def test_load_config_overrides(tmp_path):
    (tmp_path / "config.yaml").write_text(
        "SCRIPT_TIMEOUT: 2\nCOLLECTION_ORDER:\n  - users\nMAX_WORKERS: 8\n", encoding="utf-8"
    )
    config = load_config(str(tmp_path))
    assert config["SCRIPT_TIMEOUT"] == 2
    assert config["COLLECTION_ORDER"] == ["users"]
    assert config["MAX_WORKERS"] == 8
    assert config["REQUEST_TIMEOUT"] == 30


@pytest.mark.parametrize("content", [
    "SCRIPT_TIMEOUT: 0\n",
    "SCRIPT_MAX_STEPS: 1.5\n",
    "MAX_WORKERS: true\n",
    "COLLECTION_ORDER: users\n",
    "- not\n- a mapping\n",
    "SCRIPT_TIMEOUT: [unclosed\n",
])
def test_load_config_rejects_invalid_values(tmp_path, content):
    (tmp_path / "config.yaml").write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(tmp_path))


def test_interrupt_cancels_other_parallel_runs():
    storage = MemoryStore()
    storage.create_environment("Dev", id="dev", is_active=True, variables={"baseUrl": "https://x.test"})
    first = storage.create_collection("A", requests=[
        {"name": "Interrupted", "url": "{{baseUrl}}/boom"},
    ])
    second = storage.create_collection("B", requests=[
        {"name": "B1", "url": "{{baseUrl}}/b1"},
        {"name": "B2", "url": "{{baseUrl}}/b2"},
        {"name": "B3", "url": "{{baseUrl}}/b3"},
    ])
    store = VariableStore(storage)
    cancel = threading.Event()

    def on_send(resolved):
        if resolved.url.endswith("/boom"):
            raise KeyboardInterrupt
        cancel.wait(timeout=5)

    transport = FakeTransport(on_send=on_send)
    with pytest.raises(KeyboardInterrupt):
        run_collections([(first, "dev"), (second, "dev")], store, transport,
                        max_workers=2, cancel_event=cancel)

    assert cancel.is_set()
    urls = [resolved.url for resolved in transport.sent]
    assert "https://x.test/b2" not in urls
    assert "https://x.test/b3" not in urls
