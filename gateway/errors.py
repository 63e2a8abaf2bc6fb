"""Error taxonomy for the gateway.

Every error carries the OAuth2 error code it maps to and the HTTP status
used when it is rendered as a JSON error body.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    error = "server_error"
    status_code = 500

    def __init__(self, description: str = ""):
        super().__init__(description)
        self.description = description

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


# ============== Client errors ==============

class ClientError(GatewayError):
    error = "invalid_request"
    status_code = 400


class InvalidRequest(ClientError):
    error = "invalid_request"


class InvalidClientMetadata(ClientError):
    error = "invalid_client_metadata"


class InvalidRedirectUri(InvalidClientMetadata):
    error = "invalid_redirect_uri"


class UnknownClient(ClientError):
    error = "invalid_client"


class RedirectUriMismatch(ClientError):
    error = "invalid_request"


class InvalidScope(ClientError):
    error = "invalid_scope"


class UnsupportedResponseType(ClientError):
    error = "unsupported_response_type"


class UnsupportedGrantType(ClientError):
    error = "unsupported_grant_type"


class InvalidGrant(ClientError):
    error = "invalid_grant"


class ReplayError(InvalidGrant):
    """An authorization code was presented after it had been consumed."""


# ============== State errors ==============

class StateError(GatewayError):
    """Any failure to recover a request from an encrypted state blob.

    Descriptions are for logs only; users always see the generic page.
    """

    error = "invalid_request"
    status_code = 400


class StateTampered(StateError):
    pass


class StateMalformed(StateError):
    pass


class StateExpired(StateError):
    pass


class StateReplayed(StateError):
    pass


# ============== Consent ==============

class ConsentDenied(GatewayError):
    error = "access_denied"
    status_code = 400


# ============== Upstream ==============

class UpstreamError(GatewayError):
    """The upstream provider answered with an error or a malformed body."""

    error = "server_error"
    status_code = 502


class UpstreamUnavailable(UpstreamError):
    """The upstream provider could not be reached in time."""

    error = "temporarily_unavailable"
    status_code = 503
