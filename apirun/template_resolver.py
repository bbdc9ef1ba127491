# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import re

from .models import ResolutionError, ResolvedRequest

# Regex for variable substitution {{variable_name}}.
# Anything else between double braces is left untouched.
VAR_REGEX = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")


def find_placeholders(text):
    """Returns the identifiers referenced in a template, in order of appearance."""
    if not text:
        return []
    return [m.group(1) for m in VAR_REGEX.finditer(text)]


def lookup(name, scopes):
    """Returns the value of the first scope defining 'name', or None."""
    for scope in scopes:
        if scope and name in scope:
            return scope[name]
    return None


def substitute_variables(text, scopes, field):
    """
    Substitutes {{variable}} placeholders in a string in a single pass.
    Substituted values are not scanned again.
    """
    if not text:
        return text

    parts = []
    last = 0
    for match in VAR_REGEX.finditer(text):
        value = lookup(match.group(1), scopes)
        if value is None:
            raise ResolutionError(field, match.group(1), match.start())
        parts.append(text[last:match.start()])
        parts.append(str(value))
        last = match.end()
    parts.append(text[last:])
    return ''.join(parts)


def resolve(request, path_variables=None, active_env=None):
    """
    Expands the URL, header values and body of a request.

    Scopes are searched in order: the request's path variables, then the
    active environment. Raises ResolutionError on the first placeholder
    found in neither.
    """
    if path_variables is None:
        path_variables = request.path_variables
    env_vars = active_env.variables if active_env is not None else {}
    scopes = (path_variables, env_vars)

    url = substitute_variables(request.url, scopes, 'url')
    headers = {
        name: substitute_variables(value, scopes, f"headers.{name}")
        for name, value in request.headers.items()
    }
    body = substitute_variables(request.body, scopes, 'body')

    return ResolvedRequest(
        method=request.method,
        url=url,
        headers=headers,
        body=body,
        body_type=request.body_type,
    )
