"""Per-deployment collaborators shared by the request handlers.

Built once by the app factory and attached to app.state; handlers reach it
through get_gateway().
"""

from typing import Optional

from fastapi import Request

from gateway.jwt_utils import PRINCIPAL_COOKIE_NAME, derive_signing_key, verify_principal_token
from gateway.state_codec import StateCodec
from gateway.stores import GatewayStore
from gateway.upstream import UpstreamClient


class Gateway:
    def __init__(self, config, store: GatewayStore, codec: StateCodec, upstream: UpstreamClient):
        self.config = config
        self.store = store
        self.codec = codec
        self.upstream = upstream
        self.principal_key = derive_signing_key(config.state_key)

    def principal_from(self, request: Request) -> Optional[str]:
        """Browser principal from the signed cookie, if present and valid."""
        token = request.cookies.get(PRINCIPAL_COOKIE_NAME, "")
        return verify_principal_token(token, self.principal_key, self.config.base_url)


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
