"""Utility methods"""

import json
import logging
import urllib.parse
from json import JSONDecodeError

from fhir_dispatch import errors

###############################################################################
#
# Helper Functions: reading files
#
###############################################################################


def read_text(path: str) -> str:
    """
    Reads data from the given path, in text format
    :param path: filesystem path
    :return: the file contents
    """
    logging.debug("read_text() %s", path)

    with open(path, encoding="utf8") as f:
        return f.read()


###############################################################################
#
# Helper Functions: URLs
#
###############################################################################


def urljoin(base: str, path: str) -> str:
    """Basically just urllib.parse.urljoin, but with some extra error checking"""
    path_is_absolute = bool(urllib.parse.urlparse(path).netloc)
    if path_is_absolute:
        return path

    if not base:
        raise errors.FhirUrlMissing()
    if not base.endswith("/"):
        base += "/"  # This will ensure the last segment does not get chopped off by urljoin
    return urllib.parse.urljoin(base, path)


###############################################################################
#
# Helper Functions: error messages
#
###############################################################################


def server_error_message(text: str | None) -> str | None:
    """
    Digs a human-readable explanation out of an error response body.

    Understands OperationOutcome resources and the standard OAuth2 error fields,
    and otherwise just hands back the raw text.
    """
    if not text:
        return None

    message = None
    try:
        json_response = json.loads(text)
        if not isinstance(json_response, dict):
            message = text
        elif json_response.get("resourceType") == "OperationOutcome":
            issue = (json_response.get("issue") or [{}])[0]  # just grab first issue
            message = issue.get("details", {}).get("text")
            message = message or issue.get("diagnostics")
        elif "error_description" in json_response:  # standard oauth2 error field
            message = json_response["error_description"]
        elif "error_uri" in json_response:  # another standard oauth2 error field
            message = f'visit "{json_response["error_uri"]}" for more details'
    except JSONDecodeError:
        message = text
    return message
