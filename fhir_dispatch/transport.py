"""
HTTP transports, presenting one request surface for both ways we talk to a server.

A direct transport uses a plain httpx client. An OAuth2 transport goes through the
OAuth2 sub-client, which raises for non-2xx responses. Both hand back a
TransportResult: either the server's response (whatever its status code) or a
failure message when no response was received at all.
"""

import dataclasses
import logging
from typing import Protocol

import httpx

from fhir_dispatch.reply import Verb


@dataclasses.dataclass(frozen=True)
class TransportResponse:
    code: int
    headers: dict[str, str]
    body: str


@dataclasses.dataclass(frozen=True)
class TransportFailure:
    """No response at all (TLS verification failed, connection refused, timed out...)"""

    message: str


TransportResult = TransportResponse | TransportFailure


class Transport(Protocol):
    def request(
        self, verb: Verb, url: str, headers: dict[str, str], body: str | bytes | None = None
    ) -> TransportResult: ...


class SupportsOAuth2Request(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
    ) -> httpx.Response: ...


def scrubbed_response_headers(headers: httpx.Headers) -> dict[str, str]:
    """Collapses multi-valued headers down to their first value"""
    scrubbed = {}
    for key, value in headers.multi_items():
        scrubbed.setdefault(key, value)
    return scrubbed


def _from_response(response: httpx.Response) -> TransportResponse:
    return TransportResponse(
        code=response.status_code,
        headers=scrubbed_response_headers(response.headers),
        body=response.text,
    )


def _failure(verb: Verb, url: str, exc: httpx.HTTPError) -> TransportFailure:
    logging.error("%s error for %s: %s", verb.value, url, exc)
    return TransportFailure(str(exc))


class DirectTransport:
    """Talks straight to the server with a plain httpx client"""

    def __init__(self, session: httpx.Client):
        self._session = session

    def request(
        self, verb: Verb, url: str, headers: dict[str, str], body: str | bytes | None = None
    ) -> TransportResult:
        request = self._session.build_request(verb.value, url, headers=headers, content=body)
        try:
            # Same redirect handling as the OAuth2 sub-client
            response = self._session.send(request, follow_redirects=True)
        except httpx.HTTPError as exc:
            return _failure(verb, url, exc)
        return _from_response(response)


class OAuth2Transport:
    """Talks to the server through an OAuth2 sub-client, which signs each request itself"""

    def __init__(self, oauth_session: SupportsOAuth2Request):
        self._oauth_session = oauth_session

    def request(
        self, verb: Verb, url: str, headers: dict[str, str], body: str | bytes | None = None
    ) -> TransportResult:
        try:
            response = self._oauth_session.request(verb.value, url, headers=headers, content=body)
        except httpx.HTTPStatusError as exc:
            # The server did answer, it just didn't like the request. That's still a response.
            response = exc.response
        except httpx.HTTPError as exc:
            return _failure(verb, url, exc)
        return _from_response(response)
