"""Exception classes and error handling"""

import sys
from typing import NoReturn

import rich.console
import rich.padding

# Error return codes, mostly just distinguished for the benefit of tests.
# These start at 10 just to leave some room for future use.
ARGS_CONFLICT = 10
ARGS_INVALID = 11
BASIC_CREDENTIALS_MISSING = 12
OAUTH2_CREDENTIALS_MISSING = 13
FHIR_AUTH_FAILED = 14
FHIR_URL_MISSING = 15


class FatalError(Exception):
    """An unrecoverable error"""


class FhirUrlMissing(FatalError):
    """We needed a base FHIR server URL to resolve a relative address, but none was given"""

    def __init__(self):
        super().__init__("Could not resolve a relative URL without a base FHIR server URL.")


class FhirAuthError(FatalError):
    """The server refused to hand us an OAuth2 access token"""

    def __init__(self, message: str, response=None):
        super().__init__(message)
        self.response = response


class DecodeError(ValueError):
    """Response content could not be turned into a resource"""


class UnsupportedPatchOperation(ValueError):
    """A patch operation was requested that the chosen patch format cannot express"""

    def __init__(self, op: str, patch_format: str):
        super().__init__(f'Patch operation "{op}" is not supported for {patch_format}')
        self.op = op
        self.patch_format = patch_format


def fatal(message: str, status: int, extra: str = "") -> NoReturn:
    """Convenience method to exit the program with a user-friendly error message a test-friendly status code"""
    stderr = rich.console.Console(stderr=True)
    stderr.print(message, style="bold red", highlight=False)
    if extra:
        stderr.print(rich.padding.Padding.indent(extra, 2), highlight=False)
    sys.exit(status)  # raises a SystemExit exception
