"""Tests for dispatch.py"""

import json

import ddt
import httpx

from fhir_dispatch import FhirClient, dispatch, errors
from fhir_dispatch.formats import PatchFormat, ResourceFormat
from fhir_dispatch.reply import Verb
from tests import utils

# A reasonable body for each verb, when sent through the generic dispatch() call
BODIES = {
    "GET": None,
    "POST": utils.PATIENT,
    "PUT": utils.PATIENT,
    "PATCH": '[{"op": "replace", "path": "/active", "value": false}]',
    "DELETE": None,
    "HEAD": None,
}

OPERATION_OUTCOME = {
    "resourceType": "OperationOutcome",
    "issue": [{"severity": "error", "diagnostics": "Nope"}],
}


@ddt.ddt
class TestDispatcherHelpers(utils.FhirTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make_client()

    @ddt.data(
        ("Patient/1", "https://example.com/fhir/Patient/1"),
        ("/Patient/1", "https://example.com/fhir/Patient/1"),
        ("metadata", "https://example.com/fhir/metadata"),
        ("https://elsewhere.example.com/Patient/1", "https://elsewhere.example.com/Patient/1"),
    )
    @ddt.unpack
    def test_build_url(self, path, expected):
        self.assertEqual(expected, self.client.dispatcher.build_url(path))

    def test_build_url_with_trailing_slash_base(self):
        client = FhirClient(f"{self.base_url}/", session=self.session)
        self.assertEqual(f"{self.base_url}/Patient", client.dispatcher.build_url("/Patient"))

    def test_strip_base(self):
        self.assertEqual("/Patient/1", self.client.strip_base(f"{self.base_url}/Patient/1"))

    def test_clean_headers(self):
        self.assertEqual(
            {"format": "application/fhir+json", "X-Count": "3"},
            dispatch.clean_headers(
                {"format": ResourceFormat.JSON, "bogus": None, None: "x", "X-Count": 3}
            ),
        )
        self.assertEqual({}, dispatch.clean_headers(None))

    def test_raw_payloads_pass_through(self):
        dispatcher = self.client.dispatcher
        self.assertEqual("raw", dispatcher.request_payload("raw", ResourceFormat.JSON))
        self.assertEqual(b"raw", dispatcher.request_payload(b"raw", ResourceFormat.XML))
        self.assertIsNone(dispatcher.request_payload(None, ResourceFormat.JSON))

    def test_json_payload(self):
        payload = self.client.dispatcher.request_payload(utils.PATIENT, "application/json")
        self.assertEqual(utils.PATIENT, json.loads(payload))

    @ddt.data(ResourceFormat.XML, None, "text/plain")
    def test_xml_payload(self, fmt):
        payload = self.client.dispatcher.request_payload(utils.PATIENT, fmt)
        self.assertTrue(payload.startswith("<?xml"))

    @ddt.data(
        (utils.PATIENT, None, ResourceFormat.XML),
        (utils.PATIENT, "text/plain", ResourceFormat.XML),
        (utils.PATIENT, ResourceFormat.JSON, ResourceFormat.JSON),
        (utils.PATIENT, "application/json", "application/json"),
        ("raw", None, None),
        ("raw", "text/csv", "text/csv"),
    )
    @ddt.unpack
    def test_payload_format(self, resource, fmt, expected):
        self.assertEqual(expected, self.client.dispatcher.payload_format(resource, fmt))


@ddt.ddt
class TestDispatcherRequests(utils.FhirTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make_client()

    def test_get_sets_accept_from_format(self):
        route = self.respx_mock.get(f"{self.base_url}/Patient/1").respond(json=utils.PATIENT)

        reply = self.client.get("Patient/1", self.client.fhir_headers(format=ResourceFormat.JSON))

        request = route.calls.last.request
        self.assertEqual("application/fhir+json", request.headers["Accept"])
        self.assertEqual("utf-8", request.headers["Accept-Charset"])
        self.assertNotIn("format", request.headers)
        self.assertEqual(200, reply.code)
        self.assertEqual(Verb.GET, reply.request.method)
        self.assertEqual("/Patient/1", reply.request.path)
        self.assertIs(reply, self.client.reply)

    def test_explicit_accept_wins(self):
        route = self.respx_mock.get(f"{self.base_url}/Patient").respond(status_code=200)
        self.client.get("Patient", {"format": ResourceFormat.JSON, "accept": "text/csv"})
        self.assertEqual("text/csv", route.calls.last.request.headers["Accept"])

    def test_post_json(self):
        route = self.respx_mock.post(f"{self.base_url}/Patient").respond(
            status_code=201, headers={"Location": f"{self.base_url}/Patient/123/_history/1"}
        )

        reply = self.client.post("Patient", utils.PATIENT, {"format": ResourceFormat.JSON})

        request = route.calls.last.request
        self.assertEqual("application/fhir+json", request.headers["Content-Type"])
        self.assertEqual("application/fhir+json", request.headers["Accept"])
        self.assertEqual(utils.PATIENT, json.loads(request.content))
        self.assertEqual(201, reply.code)
        self.assertEqual(f"{self.base_url}/Patient/123/_history/1", reply.self_link)

    def test_put_defaults_to_xml(self):
        route = self.respx_mock.put(f"{self.base_url}/Patient/123").respond(status_code=200)

        self.client.put("Patient/123", utils.PATIENT, self.client.fhir_headers())

        request = route.calls.last.request
        self.assertEqual("application/fhir+xml", request.headers["Content-Type"])
        self.assertTrue(request.content.startswith(b"<?xml"))
        self.assertIn(b'<id value="123"/>', request.content)

    @ddt.data("POST", "PUT")
    def test_body_without_format_is_labeled_xml(self, verb):
        route = self.respx_mock.route(method=verb, url=f"{self.base_url}/Patient").respond(
            status_code=200
        )

        self.client.dispatch(verb, "Patient", utils.PATIENT)

        request = route.calls.last.request
        self.assertTrue(request.content.startswith(b"<?xml"))
        self.assertEqual("application/fhir+xml", request.headers["Content-Type"])

    def test_explicit_content_type_wins(self):
        route = self.respx_mock.post(f"{self.base_url}/Patient").respond(status_code=201)
        self.client.post("Patient", utils.PATIENT, {"Content-Type": "application/xml"})
        self.assertEqual("application/xml", route.calls.last.request.headers["Content-Type"])

    def test_patch_json(self):
        route = self.respx_mock.patch(f"{self.base_url}/Patient/123").respond(status_code=200)
        patchset = [{"op": "replace", "path": "Patient/active", "value": False}]

        self.client.patch("Patient/123", patchset, {"format": PatchFormat.JSON})

        request = route.calls.last.request
        self.assertEqual("application/json-patch+json", request.headers["Content-Type"])
        self.assertEqual(
            [{"op": "replace", "path": "/active", "value": False}], json.loads(request.content)
        )

    def test_patch_xml(self):
        route = self.respx_mock.patch(f"{self.base_url}/Patient/123").respond(status_code=200)
        patchset = [{"op": "replace", "path": "/Patient/active", "value": False}]

        self.client.patch("Patient/123", patchset, {"format": PatchFormat.XML})

        request = route.calls.last.request
        self.assertEqual("application/xml-patch+xml", request.headers["Content-Type"])
        self.assertIn(
            b'<diff><replace sel="/Patient/active/@value">false</replace></diff>', request.content
        )

    def test_patch_xml_unsupported_op_raises_before_sending(self):
        route = self.respx_mock.patch(f"{self.base_url}/Patient/123").respond(status_code=200)
        patchset = [{"op": "add", "path": "/Patient/telecom", "value": "555"}]

        with self.assertRaises(errors.UnsupportedPatchOperation):
            self.client.patch("Patient/123", patchset, {"format": PatchFormat.XML})

        self.assertEqual(0, route.call_count)
        self.assertIsNone(self.client.reply)

    def test_delete_and_head(self):
        self.respx_mock.delete(f"{self.base_url}/Patient/123").respond(status_code=204)
        self.respx_mock.head(f"{self.base_url}/Patient/123").respond(
            status_code=200, headers={"ETag": 'W/"2"'}
        )

        self.assertEqual(204, self.client.delete("Patient/123").code)
        head = self.client.head("Patient/123")
        self.assertEqual('W/"2"', head.header("etag"))
        self.assertEqual("", head.body)

    def test_non_success_codes_are_kept(self):
        self.respx_mock.get(f"{self.base_url}/Patient/404").respond(status_code=404, text="Nope")
        reply = self.client.get("Patient/404")
        self.assertEqual(404, reply.code)
        self.assertEqual("Nope", reply.body)
        self.assertFalse(reply.is_ok)
        self.assertFalse(reply.transport_failed)

    @ddt.data("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")
    def test_transport_failures_become_replies(self, verb):
        message = "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"
        self.respx_mock.route(host="example.com").mock(side_effect=httpx.ConnectError(message))

        with self.assertLogs(level="ERROR"):
            reply = self.client.dispatch(verb, "Patient/1", BODIES[verb])

        self.assertIsNone(reply.code)
        self.assertIsNone(reply.response.headers)
        self.assertEqual(message, reply.body)
        self.assertTrue(reply.transport_failed)
        self.assertEqual(verb, reply.request.method.value)
        self.assertIs(reply, self.client.reply)

    def test_dispatch_accepts_verb_names(self):
        get_route = self.respx_mock.get(f"{self.base_url}/Patient/1").respond(status_code=200)
        post_route = self.respx_mock.post(f"{self.base_url}/Patient").respond(status_code=201)

        self.assertEqual(200, self.client.dispatch("get", "Patient/1").code)
        self.assertEqual(201, self.client.dispatch(Verb.POST, "Patient", "raw body").code)

        self.assertEqual(1, get_route.call_count)
        self.assertEqual(b"raw body", post_route.calls.last.request.content)

    def test_dispatch_rejects_unknown_verbs(self):
        with self.assertRaises(ValueError):
            self.client.dispatch("TRACE", "Patient")

    def test_reissue_request(self):
        route = self.respx_mock.post(f"{self.base_url}/Patient").respond(status_code=201)

        first = self.client.post("Patient", utils.PATIENT, {"format": ResourceFormat.JSON})
        second = self.client.reissue_request(first.request)

        self.assertEqual(2, route.call_count)
        first_request, second_request = [call.request for call in route.calls]
        self.assertEqual(first_request.content, second_request.content)
        self.assertEqual(
            first_request.headers["Content-Type"], second_request.headers["Content-Type"]
        )
        self.assertEqual(first.request.url, second.request.url)
        self.assertEqual(first.request.payload, second.request.payload)
        self.assertIs(second, self.client.reply)

    def test_metadata_body_is_not_logged(self):
        self.respx_mock.get(f"{self.base_url}/metadata").respond(json=utils.CAPABILITY_STATEMENT)
        with self.assertLogs(level="INFO") as logs:
            self.client.get("metadata")
        self.assertTrue(any("[too large]" in line for line in logs.output))
        self.assertFalse(any("fhirVersion" in line for line in logs.output))


@ddt.ddt
class TestDispatcherAuth(utils.FhirTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make_client()

    def use_oauth2(self, enabled: bool) -> None:
        if enabled:
            self.mock_token_endpoint("abc")
            self.client.set_oauth2_auth("id", "secret", "authorize", "token")

    def test_basic_auth_header_is_sent(self):
        self.client.set_basic_auth("User", "p4ssw0rd")
        route = self.respx_mock.get(f"{self.base_url}/Patient").respond(status_code=200)
        self.client.get("Patient")
        self.assertEqual(
            "Basic VXNlcjpwNHNzdzByZA==", route.calls.last.request.headers["Authorization"]
        )

    def test_oauth2_signs_requests(self):
        self.use_oauth2(True)
        route = self.respx_mock.get(f"{self.base_url}/Patient").respond(status_code=200)

        self.client.get("Patient")

        self.assertEqual("Bearer abc", route.calls.last.request.headers["Authorization"])

    @ddt.data(
        # verb, status, through oauth2
        ("GET", 404, False),
        ("POST", 422, False),
        ("PUT", 409, False),
        ("PATCH", 400, False),
        ("DELETE", 500, False),
        ("GET", 403, True),
        ("POST", 422, True),
        ("PUT", 412, True),
        ("PATCH", 400, True),
        ("DELETE", 503, True),
    )
    @ddt.unpack
    def test_error_statuses_become_replies(self, verb, status, oauth2):
        self.use_oauth2(oauth2)
        route = self.respx_mock.route(method=verb, url=f"{self.base_url}/Patient/123")
        route.respond(status_code=status, json=OPERATION_OUTCOME)

        reply = self.client.dispatch(
            verb, "Patient/123", BODIES[verb], self.client.fhir_headers(ResourceFormat.JSON)
        )

        self.assertEqual(status, reply.code)
        self.assertIn("Nope", reply.body)
        self.assertFalse(reply.transport_failed)
        self.assertIsNone(self.client.parse_reply("Patient", ResourceFormat.JSON, reply))
        self.assertEqual(oauth2, "Authorization" in route.calls.last.request.headers)

    @ddt.data(
        # verb, status, through oauth2
        ("GET", 200, False),
        ("POST", 201, False),
        ("PUT", 200, False),
        ("PATCH", 200, False),
        ("DELETE", 200, False),
        ("GET", 200, True),
        ("POST", 201, True),
        ("PUT", 200, True),
        ("PATCH", 200, True),
        ("DELETE", 200, True),
    )
    @ddt.unpack
    def test_success_replies_parse(self, verb, status, oauth2):
        self.use_oauth2(oauth2)
        route = self.respx_mock.route(method=verb, url=f"{self.base_url}/Patient/123")
        route.respond(status_code=status, json=utils.PATIENT)

        reply = self.client.dispatch(
            verb, "Patient/123", BODIES[verb], self.client.fhir_headers(ResourceFormat.JSON)
        )
        resource = self.client.parse_reply("Patient", ResourceFormat.JSON, reply)

        self.assertEqual(status, reply.code)
        self.assertEqual(utils.PATIENT, resource.data)
        self.assertIs(self.client, resource.client)
        self.assertEqual(oauth2, "Authorization" in route.calls.last.request.headers)

    def test_head_skips_oauth2(self):
        self.use_oauth2(True)
        route = self.respx_mock.head(f"{self.base_url}/Patient/1").respond(status_code=200)

        self.client.head("Patient/1")

        self.assertNotIn("Authorization", route.calls.last.request.headers)

    def test_head_keeps_static_headers(self):
        self.client.set_bearer_token("fob")
        route = self.respx_mock.head(f"{self.base_url}/Patient/1").respond(status_code=200)
        self.client.head("Patient/1")
        self.assertEqual("Bearer fob", route.calls.last.request.headers["Authorization"])

    @ddt.data(
        ("set_basic_auth", ("User", "p4ssw0rd"), "VXNlcjpwNHNzdzByZA=="),
        ("set_bearer_token", ("fob",), "Bearer fob"),
    )
    @ddt.unpack
    def test_credentials_are_not_logged(self, setter, args, secret):
        getattr(self.client, setter)(*args)
        route = self.respx_mock.get(f"{self.base_url}/Patient").respond(status_code=200)

        with self.assertLogs(level="INFO") as logs:
            reply = self.client.get("Patient", {"Cookie": "session=hush"})

        output = "\n".join(logs.output)
        self.assertNotIn(secret, output)
        self.assertNotIn("session=hush", output)
        self.assertIn("[redacted]", output)
        # Only the logs are scrubbed, not the request itself
        self.assertIn(secret, route.calls.last.request.headers["Authorization"])
        self.assertIn(secret, reply.request.headers["Authorization"])
