"""FHIR client request dispatch, authentication, and format negotiation"""

__version__ = "1.0.0"

from .auth import Auth, BasicAuth, BearerAuth, OAuth2Auth, create_auth
from .client import FhirClient
from .codec import Resource, ResourceCodec
from .errors import DecodeError, FatalError, FhirAuthError, UnsupportedPatchOperation
from .formats import PatchFormat, ResourceFormat
from .reply import ClientReply, RequestDescriptor, ResponseDescriptor, Verb
