"""Tests for {{placeholder}} resolution."""

import pytest

from apirun.models import Environment, HttpRequest, ResolutionError
from apirun.template_resolver import find_placeholders, resolve


def _make_request(**kwargs):
    defaults = {
        "id": "r1",
        "name": "Get User",
        "url": "https://api.example.com/users",
    }
    defaults.update(kwargs)
    return HttpRequest(**defaults)


def _make_env(**variables):
    return Environment(id="dev", name="Development", variables=variables, is_active=True)


def test_no_placeholders_is_identity():
    request = _make_request(
        method="POST",
        headers={"Accept": "application/json"},
        body='{"name": "John"}',
        body_type="json",
    )
    resolved = resolve(request, {}, _make_env(token="abc"))
    assert resolved.method == "POST"
    assert resolved.url == request.url
    assert resolved.headers == request.headers
    assert resolved.body == request.body
    assert resolved.body_type == "json"


def test_header_resolves_from_environment():
    request = _make_request(headers={"Authorization": "Bearer {{token}}"})
    resolved = resolve(request, {}, _make_env(token="dev-token-123"))
    assert resolved.headers["Authorization"] == "Bearer dev-token-123"


def test_path_variables_take_precedence():
    request = _make_request(url="https://api.example.com/users/{{userId}}")
    resolved = resolve(request, {"userId": "123"}, _make_env(userId="1"))
    assert resolved.url == "https://api.example.com/users/123"


def test_defaults_to_request_path_variables():
    request = _make_request(url="/users/{{userId}}", path_variables={"userId": "7"})
    assert resolve(request, active_env=None).url == "/users/7"


def test_missing_variable_without_environment():
    request = _make_request(url="{{baseUrl}}/users")
    with pytest.raises(ResolutionError) as exc_info:
        resolve(request, {}, None)
    assert exc_info.value.field == "url"
    assert exc_info.value.identifier == "baseUrl"
    assert exc_info.value.offset == 0


def test_missing_variable_reports_header_and_offset():
    request = _make_request(headers={"X-Trace": "id-{{traceId}}"})
    with pytest.raises(ResolutionError) as exc_info:
        resolve(request, {}, _make_env())
    assert exc_info.value.field == "headers.X-Trace"
    assert exc_info.value.identifier == "traceId"
    assert exc_info.value.offset == 3


def test_missing_variable_in_body():
    request = _make_request(body='{"id": "{{id}}"}')
    with pytest.raises(ResolutionError) as exc_info:
        resolve(request, {}, _make_env())
    assert exc_info.value.field == "body"


def test_empty_string_value_is_not_missing():
    request = _make_request(url="https://api.example.com/{{prefix}}users")
    resolved = resolve(request, {}, _make_env(prefix=""))
    assert resolved.url == "https://api.example.com/users"


def test_single_pass_does_not_expand_substituted_values():
    request = _make_request(url="/{{a}}")
    resolved = resolve(request, {}, _make_env(a="{{a}}", b="x"))
    assert resolved.url == "/{{a}}"


def test_non_identifier_braces_are_left_untouched():
    body = '{"tpl": "{{ spaced }}", "num": "{{1abc}}", "empty": "{{}}"}'
    request = _make_request(body=body)
    assert resolve(request, {}, None).body == body


def test_resolution_is_idempotent():
    request = _make_request(
        url="{{baseUrl}}/users/{{id}}",
        headers={"Authorization": "Bearer {{token}}"},
    )
    env = _make_env(baseUrl="https://x.test", id="5", token="t")
    assert resolve(request, {}, env) == resolve(request, {}, env)


def test_find_placeholders_in_order():
    assert find_placeholders("{{a}}/{{b}}/{{ c }}/{{a}}") == ["a", "b", "a"]
    assert find_placeholders("") == []
