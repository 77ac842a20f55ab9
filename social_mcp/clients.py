"""Dynamic Client Registration (RFC 7591) registry."""

import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URIS = ("http://127.0.0.1/callback", "http://localhost/callback")
DEFAULT_CLIENT_NAME = "MCP Client"


class RegistrationError(ValueError):
    """The registration request body is not a usable client metadata document."""


@dataclass
class RegisteredClient:
    client_id: str
    client_name: str = DEFAULT_CLIENT_NAME
    redirect_uris: list[str] = field(default_factory=lambda: list(DEFAULT_REDIRECT_URIS))
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"

    def to_metadata(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "redirect_uris": self.redirect_uris,
            "grant_types": self.grant_types,
            "response_types": self.response_types,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }

    def allows_redirect(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris


def _string_list(body: dict, name: str) -> list[str] | None:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RegistrationError(f"{name} must be a list of strings")
    return list(value)


class ClientRegistry:
    """
    In-memory store of registered OAuth clients, keyed by client id.

    Registration never fails on content: missing fields get public-client
    defaults, and registering an existing id overwrites it. Entries live for
    the lifetime of the process.
    """

    def __init__(self):
        self._clients: dict[str, RegisteredClient] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def register(self, body: Any) -> RegisteredClient:
        """
        Register a client from a parsed RFC 7591 request body.

        Raises:
            RegistrationError: If the body is not a JSON object or a list
                field holds something other than strings.
        """
        if not isinstance(body, dict):
            raise RegistrationError("registration body must be a JSON object")

        client_id = body.get("client_id") or f"client_{secrets.token_hex(16)}"
        client = RegisteredClient(client_id=str(client_id))

        redirect_uris = _string_list(body, "redirect_uris")
        if redirect_uris:
            client.redirect_uris = redirect_uris
        grant_types = _string_list(body, "grant_types")
        if grant_types:
            client.grant_types = grant_types
        response_types = _string_list(body, "response_types")
        if response_types:
            client.response_types = response_types
        if body.get("client_name"):
            client.client_name = str(body["client_name"])
        if body.get("token_endpoint_auth_method"):
            client.token_endpoint_auth_method = str(body["token_endpoint_auth_method"])

        with self._lock:
            self._clients[client.client_id] = client

        logger.info(
            "Client registered",
            extra={
                "log_data": {
                    "client_id": client.client_id,
                    "client_name": client.client_name,
                    "redirect_uris": client.redirect_uris,
                }
            },
        )
        return client

    def get(self, client_id: str) -> RegisteredClient | None:
        with self._lock:
            return self._clients.get(client_id)
