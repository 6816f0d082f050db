"""The record of one request/response exchange with a FHIR server"""

import dataclasses
import enum


class Verb(enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"

    @property
    def has_body(self) -> bool:
        return self in {Verb.POST, Verb.PUT, Verb.PATCH}


@dataclasses.dataclass(frozen=True)
class RequestDescriptor:
    method: Verb
    url: str
    path: str  # url relative to the base service url
    headers: dict[str, str]
    payload: str | bytes | None = None


@dataclasses.dataclass(frozen=True)
class ResponseDescriptor:
    # code and headers are None when we never got a response (TLS or connection failures),
    # in which case body holds the failure message
    code: int | None
    headers: dict[str, str] | None
    body: str


@dataclasses.dataclass(frozen=True)
class ClientReply:
    """
    One request and the response it got.

    Every dispatched request produces exactly one of these, even if the server
    could not be reached at all.
    """

    request: RequestDescriptor
    response: ResponseDescriptor

    @property
    def code(self) -> int | None:
        return self.response.code

    @property
    def body(self) -> str:
        return self.response.body

    @property
    def transport_failed(self) -> bool:
        return self.response.code is None

    @property
    def is_ok(self) -> bool:
        return self.response.code is not None and 200 <= self.response.code < 300

    def header(self, name: str) -> str | None:
        """Case-insensitive response header lookup"""
        lowered = name.lower()
        for key, value in (self.response.headers or {}).items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def self_link(self) -> str | None:
        """Where the server says the resource lives (useful after a create)"""
        return self.header("Content-Location") or self.header("Location")
