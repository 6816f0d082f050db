"""Turns paths, headers, and bodies into requests, and their outcomes into ClientReplies"""

import dataclasses
import logging
import re
import urllib.parse
from collections.abc import Callable
from typing import TYPE_CHECKING

from fhir_dispatch import codec, formats, patch, transport
from fhir_dispatch.reply import ClientReply, RequestDescriptor, ResponseDescriptor, Verb

if TYPE_CHECKING:
    from fhir_dispatch.client import FhirClient  # pragma: no cover

ABSOLUTE_URL_REGEX = re.compile(r"^\w+://")

Body = codec.Resource | dict | str | bytes | None

# Never written to the logs, along with whatever the active auth strategy signs with
SECRET_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie"})


def clean_headers(headers: dict | None) -> dict[str, str]:
    """Drops any entries with a missing key or value, and stringifies the rest"""
    return {
        str(key): str(value)
        for key, value in (headers or {}).items()
        if key is not None and value is not None
    }


def _find_header(headers: dict[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key in headers:
        if key.lower() == lowered:
            return key
    return None


def _pop_format(headers: dict[str, str]) -> str | None:
    """Removes the "format" pseudo-header, which we use for our own bookkeeping, not the server's"""
    key = _find_header(headers, "format")
    return headers.pop(key) if key else None


class Dispatcher:
    """
    Issues GET/POST/PUT/PATCH/DELETE/HEAD requests on behalf of a FhirClient.

    Every request results in a ClientReply, which is also stored as the client's last reply.
    Non-2xx responses and transport failures are not raised, they are recorded in the reply.
    """

    def __init__(self, client: "FhirClient"):
        self._client = client

    ###################################################################################################################
    #
    # Verbs
    #
    ###################################################################################################################

    def get(self, path: str, headers: dict | None = None) -> ClientReply:
        headers, fmt = self._prepare_headers(headers)
        self._default_header(headers, "Accept", fmt)
        return self._dispatch(Verb.GET, path, headers)

    def post(self, path: str, resource: Body, headers: dict | None = None) -> ClientReply:
        headers, fmt = self._prepare_headers(headers)
        payload = self.request_payload(resource, fmt)
        self._default_header(headers, "Accept", fmt)
        self._default_header(headers, "Content-Type", self.payload_format(resource, fmt))
        return self._dispatch(Verb.POST, path, headers, payload)

    def put(self, path: str, resource: Body, headers: dict | None = None) -> ClientReply:
        headers, fmt = self._prepare_headers(headers)
        payload = self.request_payload(resource, fmt)
        self._default_header(headers, "Accept", fmt)
        self._default_header(headers, "Content-Type", self.payload_format(resource, fmt))
        return self._dispatch(Verb.PUT, path, headers, payload)

    def patch(
        self,
        path: str,
        patchset: list[dict] | str | bytes,
        headers: dict | None = None,
        skip_unsupported: bool = False,
    ) -> ClientReply:
        """
        Sends a patch. The "format" header names the PatchFormat to encode the patchset with.

        :raises errors.UnsupportedPatchOperation: for operations the patch format can't express
        """
        headers, fmt = self._prepare_headers(headers)
        if isinstance(patchset, (str, bytes)):
            payload = patchset
        else:
            payload = patch.request_patch_payload(patchset, fmt, skip_unsupported=skip_unsupported)
        self._default_header(headers, "Content-Type", fmt)
        return self._dispatch(Verb.PATCH, path, headers, payload)

    def delete(self, path: str, headers: dict | None = None) -> ClientReply:
        headers, fmt = self._prepare_headers(headers)
        self._default_header(headers, "Accept", fmt)
        return self._dispatch(Verb.DELETE, path, headers)

    def head(self, path: str, headers: dict | None = None) -> ClientReply:
        """
        Sends a HEAD request.

        Unlike the other verbs, this always goes straight to the server with just the static
        security headers, even when OAuth2 is active.
        """
        headers, fmt = self._prepare_headers(headers)
        self._default_header(headers, "Accept", fmt)
        return self._dispatch(
            Verb.HEAD, path, headers, via=transport.DirectTransport(self._client.session)
        )

    def dispatch(
        self, verb: Verb | str, path: str, body=None, headers: dict | None = None
    ) -> ClientReply:
        """Issues any verb. The body is a resource for POST/PUT and a patchset for PATCH."""
        verb = Verb(verb.upper()) if isinstance(verb, str) else verb
        if verb.has_body:
            return self._with_body[verb](path, body, headers)
        return self._without_body[verb](path, headers)

    def reissue_request(self, request: RequestDescriptor) -> ClientReply:
        """Sends a previously recorded request again, payload and all"""
        if request.method.has_body:
            return self._with_body[request.method](request.url, request.payload, request.headers)
        return self._without_body[request.method](request.url, request.headers)

    @property
    def _with_body(self) -> dict[Verb, Callable[..., ClientReply]]:
        return {Verb.POST: self.post, Verb.PUT: self.put, Verb.PATCH: self.patch}

    @property
    def _without_body(self) -> dict[Verb, Callable[..., ClientReply]]:
        return {Verb.GET: self.get, Verb.DELETE: self.delete, Verb.HEAD: self.head}

    ###################################################################################################################
    #
    # URLs and payloads
    #
    ###################################################################################################################

    def build_url(self, path: str) -> str:
        """Absolute URLs pass through untouched, anything else is relative to the base service URL"""
        if ABSOLUTE_URL_REGEX.match(path):
            return path
        base = self._client.base_service_url.removesuffix("/")
        return f"{base}/{path.removeprefix('/')}"

    def strip_base(self, url: str) -> str:
        return url.replace(self._client.base_service_url, "")

    def request_payload(self, resource: Body, fmt: str | None) -> str | bytes | None:
        """Encodes a resource as JSON if the format says so, and XML otherwise"""
        if resource is None or isinstance(resource, (str, bytes)):
            return resource
        if formats.format_of(fmt) == "json":
            return self._client.codec.encode(resource, formats.ResourceFormat.JSON)
        return self._client.codec.encode(resource, formats.ResourceFormat.XML)

    @staticmethod
    def payload_format(resource: Body, fmt: str | None) -> str | None:
        """The format a body goes out in, once request_payload() has had its way with it"""
        if resource is None or isinstance(resource, (str, bytes)) or formats.format_of(fmt):
            return fmt
        return formats.ResourceFormat.XML

    ###################################################################################################################
    #
    # Helpers
    #
    ###################################################################################################################

    def _prepare_headers(self, headers: dict | None) -> tuple[dict[str, str], str | None]:
        headers = clean_headers(headers)
        fmt = _pop_format(headers)
        # OAuth2 contributes nothing here, since its sub-client signs each request itself
        headers.update(self._client.security_headers)
        return headers, fmt

    @staticmethod
    def _default_header(headers: dict[str, str], name: str, value: str | None) -> None:
        if value and not _find_header(headers, name):
            headers[name] = value

    def _dispatch(
        self,
        verb: Verb,
        path: str,
        headers: dict[str, str],
        payload: str | bytes | None = None,
        via: transport.Transport | None = None,
    ) -> ClientReply:
        url = self.build_url(path)
        logging.info("%s %s", verb.value, url)

        if via is None:
            via = self._client.auth.transport(self._client.session)
        result = via.request(verb, url, headers, payload)

        request = RequestDescriptor(
            method=verb, url=url, path=self.strip_base(url), headers=headers, payload=payload
        )
        if isinstance(result, transport.TransportFailure):
            response = ResponseDescriptor(code=None, headers=None, body=result.message)
        else:
            response = ResponseDescriptor(
                code=result.code, headers=result.headers, body=result.body
            )
        self._log_exchange(request, response)

        reply = ClientReply(request, response)
        self._client.reply = reply
        return reply

    def redacted(self, request: RequestDescriptor) -> RequestDescriptor:
        """A copy of the request that is safe to log, with credentials masked"""
        secret = SECRET_HEADERS | {key.lower() for key in self._client.security_headers}
        headers = {
            key: "[redacted]" if key.lower() in secret else value
            for key, value in request.headers.items()
        }
        return dataclasses.replace(request, headers=headers)

    def _log_exchange(self, request: RequestDescriptor, response: ResponseDescriptor) -> None:
        # Capability statements are enormous, and rarely interesting
        if urllib.parse.urlparse(request.url).path.endswith("/metadata"):
            body = "[too large]"
        else:
            body = response.body
        logging.info(
            "%s - Request: %s, Response: %s %s",
            request.method.value,
            self.redacted(request),
            response.code,
            body,
        )
