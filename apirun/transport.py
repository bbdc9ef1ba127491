# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import json
import logging
import time

import requests
from requests.structures import CaseInsensitiveDict

from .models import Response, TransportError

log = logging.getLogger('apirun')

DEFAULT_CONTENT_TYPES = {
    'json': 'application/json',
    'raw': 'text/plain',
    'form': 'application/x-www-form-urlencoded',
}


class Transport:
    """
    Sends one resolved request and returns a Response.
    Implementations raise TransportError when no response was received.
    """

    def send(self, resolved):
        raise NotImplementedError


class RequestsTransport(Transport):
    """Transport backed by the requests library. No retries."""

    def __init__(self, timeout=30, session=None):
        self.timeout = timeout
        self.session = session

    def prepare(self, resolved):
        """Returns (headers, data) for a resolved request according to its bodyType."""
        headers = CaseInsensitiveDict(resolved.headers)
        if resolved.body_type == 'none' or not resolved.body:
            return headers, None
        if 'Content-Type' not in headers:
            headers['Content-Type'] = DEFAULT_CONTENT_TYPES[resolved.body_type]
        return headers, resolved.body.encode('utf-8')

    def send(self, resolved):
        headers, data = self.prepare(resolved)
        sender = self.session or requests

        log.info(f"Dispatching {resolved.method} to: {resolved.url}")
        log.debug(f"HEADERS: {dict(headers)}")
        if data:
            log.debug(f"DATA: {resolved.body[:200]}")

        start = time.time()
        try:
            raw = sender.request(
                resolved.method,
                resolved.url,
                headers=dict(headers),
                data=data,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            log.error(f"Request failed: {e}")
            raise TransportError(f"{type(e).__name__}: {e}", cause=e) from e
        duration_ms = (time.time() - start) * 1000

        response = Response(
            status_code=raw.status_code,
            reason=raw.reason or '',
            headers=CaseInsensitiveDict(raw.headers),
            text=raw.text,
            elapsed_ms=round(duration_ms, 2),
        )

        status_message = f"STATUS: {response.status_code} {response.reason} ({duration_ms:.0f} ms)"
        if response.status_code >= 500:
            log.error(status_message)
        elif response.status_code >= 400:
            log.warning(status_message)
        else:
            log.info(status_message)

        log.debug(f"HEADERS (Response): {dict(response.headers)}")
        try:
            log.debug(f"BODY (Response JSON): \n{json.dumps(response.json(), indent=2, ensure_ascii=False)}")
        except ValueError:
            text = response.text
            if len(text) > 1000:
                log.debug(f"BODY (Response Text): {text[:1000]}... (truncated)")
            else:
                log.debug(f"BODY (Response Text): {text}")

        return response
