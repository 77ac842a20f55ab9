"""Unit tests for dynamic client registration (social_mcp/clients.py)."""

import pytest

from social_mcp.clients import DEFAULT_REDIRECT_URIS, ClientRegistry, RegistrationError


@pytest.fixture
def registry():
    return ClientRegistry()


class TestRegister:
    def test_empty_body_gets_public_client_defaults(self, registry):
        client = registry.register({})

        assert client.client_id.startswith("client_")
        assert len(client.client_id) == len("client_") + 32
        assert client.to_metadata() == {
            "client_id": client.client_id,
            "client_name": "MCP Client",
            "redirect_uris": list(DEFAULT_REDIRECT_URIS),
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    def test_supplied_metadata_is_kept(self, registry):
        client = registry.register(
            {
                "client_name": "Desktop App",
                "redirect_uris": ["http://127.0.0.1:5000/cb"],
                "grant_types": ["authorization_code", "refresh_token"],
            }
        )

        assert client.client_name == "Desktop App"
        assert client.redirect_uris == ["http://127.0.0.1:5000/cb"]
        assert client.grant_types == ["authorization_code", "refresh_token"]
        assert registry.get(client.client_id) is client

    def test_generated_ids_are_unique(self, registry):
        ids = {registry.register({}).client_id for _ in range(50)}

        assert len(ids) == 50
        assert len(registry) == 50

    def test_reregistering_an_id_overwrites(self, registry):
        registry.register({"client_id": "fixed", "client_name": "first"})
        registry.register({"client_id": "fixed", "client_name": "second"})

        assert registry.get("fixed").client_name == "second"
        assert len(registry) == 1

    def test_single_string_redirect_uri_is_accepted(self, registry):
        client = registry.register({"redirect_uris": "http://localhost:9000/cb"})

        assert client.redirect_uris == ["http://localhost:9000/cb"]

    @pytest.mark.parametrize("body", [[], "client", None, 42])
    def test_non_object_body_is_rejected(self, registry, body):
        with pytest.raises(RegistrationError):
            registry.register(body)

    def test_non_string_list_is_rejected(self, registry):
        with pytest.raises(RegistrationError, match="redirect_uris"):
            registry.register({"redirect_uris": [1, 2]})


class TestRedirectPinning:
    def test_allows_only_registered_uris(self, registry):
        client = registry.register({"redirect_uris": ["http://127.0.0.1:5000/cb"]})

        assert client.allows_redirect("http://127.0.0.1:5000/cb")
        assert not client.allows_redirect("http://127.0.0.1:5001/cb")

    def test_unknown_client(self, registry):
        assert registry.get("client_missing") is None
