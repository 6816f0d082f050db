"""Various test helper methods"""

import contextlib
import json
import os
import tempfile
import unittest
from unittest import mock

import httpx
import respx

from fhir_dispatch import FhirClient

BASE_URL = "https://example.com/fhir"

CAPABILITY_STATEMENT = {
    "resourceType": "CapabilityStatement",
    "status": "active",
    "fhirVersion": "4.0.1",
    "format": ["json"],
}

CAPABILITY_STATEMENT_XML = (
    '<CapabilityStatement xmlns="http://hl7.org/fhir">'
    '<status value="active"/>'
    '<fhirVersion value="4.0.1"/>'
    '<format value="xml"/>'
    "</CapabilityStatement>"
)

PATIENT = {"resourceType": "Patient", "id": "123", "active": True}


class FhirTestCase(unittest.TestCase):
    """Test case to hold some common code, including a started respx mock router"""

    def setUp(self):
        super().setUp()

        # It's so common to want to see more than the tiny default fragment.
        # So we just enable this across the board.
        self.maxDiff = None

        self.base_url = BASE_URL

        self.session = httpx.Client()
        self.addCleanup(self.session.close)

        # Initialize responses mock
        self.respx_mock = respx.mock(assert_all_called=False)
        self.addCleanup(self.respx_mock.stop)
        self.respx_mock.start()

    def make_client(self, **kwargs) -> FhirClient:
        """Creates a FhirClient that will be automatically closed"""
        client = FhirClient(self.base_url, **kwargs)
        self.addCleanup(client.close)
        return client

    def make_tempfile(self, contents: str) -> str:
        """Writes a temporary file that will be automatically cleaned up, returning its path"""
        tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(tempdir.cleanup)
        path = os.path.join(tempdir.name, "secret.txt")
        with open(path, "w", encoding="utf8") as f:
            f.write(contents)
        return path

    def mock_token_endpoint(self, access_token: str = "oauth-token", **kwargs) -> respx.Route:
        route = self.respx_mock.post(f"{self.base_url}/token")
        if kwargs:
            route.respond(**kwargs)
        else:
            route.respond(json={"access_token": access_token, "token_type": "bearer"})
        return route

    def patch(self, *args, **kwargs) -> mock.Mock:
        """Syntactic sugar to ease making a mock over a test's lifecycle, without decorators"""
        patcher = mock.patch(*args, **kwargs)
        self.addCleanup(patcher.stop)
        return patcher.start()

    def patch_object(self, *args, **kwargs) -> mock.Mock:
        """Syntactic sugar for making an object mock over a test's lifecycle, without decorators"""
        patcher = mock.patch.object(*args, **kwargs)
        self.addCleanup(patcher.stop)
        return patcher.start()

    @contextlib.contextmanager
    def assert_fatal_exit(self, code: int | None = None):
        with self.assertRaises(SystemExit) as cm:
            yield
        if code is not None:
            self.assertEqual(cm.exception.code, code)


def make_response(
    status_code=200, json_payload=None, text=None, headers=None
) -> httpx.Response:
    """
    Makes a fake response for ease of testing.

    Usually you'll want to use respx.get(...) etc directly.
    But if you want to mock out the client <-> server interaction entirely,
    you can use this method to fake a Response object from a method that returns one.
    """
    headers = dict(headers or {})
    headers.setdefault(
        "Content-Type", "application/json" if json_payload else "text/plain; charset=utf-8"
    )
    json_payload = json.dumps(json_payload) if json_payload else None
    body = (json_payload or text or "").encode("utf8")
    return httpx.Response(
        status_code=status_code,
        content=body,
        headers=headers,
        request=httpx.Request("GET", "https://example.com/fake_request_url"),
    )
