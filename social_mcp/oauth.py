"""
OAuth 2.0 Authorization Code + PKCE bridge onto tiered API keys.

Generic MCP clients speak OAuth; this server speaks API keys. The bridge
implements just enough of the OAuth surface for those clients to complete a
login, and hands back the user's API key as the bearer access token:

    1. Discovery:    GET /.well-known/oauth-protected-resource      (RFC 9728)
                     GET /.well-known/oauth-authorization-server    (RFC 8414)
    2. Registration: POST /register                                 (RFC 7591)
    3. Authorize:    GET /authorize         -> API key entry page
                     POST /authorize/submit -> 302 redirect_uri?code=...&state=...
    4. Token:        POST /token            -> {"access_token": <the API key>, ...}

After step 4 the client sends ``Authorization: Bearer <api key>`` to /mcp and
the regular key validation takes over. No separate token store exists: a code
is only ever issued after the key was fully validated, and redeeming it simply
returns that key.

Each step is an explicit transition returning one outcome dataclass
(``ShowCredentialForm``, ``RedirectWithCode``, ``TokenGranted``, ...). The
Starlette handlers only parse input, call the transition, and turn the outcome
into a response in ``to_response``.
"""

import html
import logging
from dataclasses import dataclass
from string import Template
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.routing import Route

from social_mcp.clients import ClientRegistry, RegisteredClient, RegistrationError
from social_mcp.codes import SUPPORTED_CHALLENGE_METHODS, CodeEngine, GrantError
from social_mcp.config import Settings
from social_mcp.keystore import KeyStoreAdapter
from social_mcp.logging_config import preview

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "mcp:tools"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizeParams:
    """The OAuth parameters carried from GET /authorize through the form POST."""

    client_id: str = ""
    redirect_uri: str = ""
    state: str = ""
    code_challenge: str = ""
    code_challenge_method: str = "S256"
    scope: str = DEFAULT_SCOPE
    resource: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AuthorizeParams":
        def get(name: str) -> str:
            value = data.get(name)
            return str(value) if value is not None else ""

        return cls(
            client_id=get("client_id"),
            redirect_uri=get("redirect_uri"),
            state=get("state"),
            code_challenge=get("code_challenge"),
            code_challenge_method=get("code_challenge_method") or "S256",
            scope=get("scope") or DEFAULT_SCOPE,
            resource=get("resource") or None,
        )


@dataclass(frozen=True)
class ShowCredentialForm:
    params: AuthorizeParams
    error: str | None = None


@dataclass(frozen=True)
class BadAuthorizeRequest:
    message: str


@dataclass(frozen=True)
class RedirectWithCode:
    location: str


@dataclass(frozen=True)
class TokenGranted:
    access_token: str
    scope: str
    expires_in: int

    def to_json(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


@dataclass(frozen=True)
class ClientRegistered:
    client: RegisteredClient


@dataclass(frozen=True)
class OAuthErrorResult:
    error: str
    description: str | None = None
    status_code: int = 400

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


Outcome = (
    ShowCredentialForm
    | BadAuthorizeRequest
    | RedirectWithCode
    | TokenGranted
    | ClientRegistered
    | OAuthErrorResult
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def add_query_params(url: str, params: Mapping[str, str]) -> str:
    """Append ``params`` to ``url``, keeping whatever query it already has."""
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v)
    return urlunparse(parsed._replace(query=urlencode(query)))


def unauthorized_response(
    issuer_url: str,
    message: str = "Authorization required",
    request_id: Any = None,
) -> JSONResponse:
    """
    The canonical 401 for protocol requests without a usable credential.

    The ``WWW-Authenticate`` challenge points clients at the protected resource
    metadata, which is how an OAuth-capable client discovers it can log in.
    """
    return JSONResponse(
        {
            "jsonrpc": "2.0",
            "error": {"code": -32001, "message": message},
            "id": request_id,
        },
        status_code=401,
        headers={
            "WWW-Authenticate": (
                f'Bearer resource_metadata="{issuer_url}{PROTECTED_RESOURCE_PATH}"'
            ),
        },
    )


AUTHORIZE_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Authorize - $server_name</title>
  <style>
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #0a0a0a; color: #e5e5e5; min-height: 100vh; display: flex; align-items: center; justify-content: center; }
    .card { background: #171717; border: 1px solid #262626; border-radius: 16px; padding: 40px; max-width: 420px; width: 100%; }
    h2 { font-size: 1.4rem; margin-bottom: 8px; color: #fff; }
    .subtitle { color: #a3a3a3; font-size: 0.9rem; margin-bottom: 24px; }
    label { display: block; font-size: 0.85rem; color: #a3a3a3; margin-bottom: 6px; }
    input[type="text"] { width: 100%; padding: 10px 14px; background: #0a0a0a; border: 1px solid #333; border-radius: 8px; color: #fff; font-size: 0.95rem; font-family: monospace; }
    .btn { display: block; width: 100%; padding: 12px; margin-top: 16px; background: #3b82f6; color: #fff; border: none; border-radius: 8px; font-size: 1rem; font-weight: 600; cursor: pointer; }
    .error { color: #ef4444; font-size: 0.85rem; margin-top: 8px; }
    .info { color: #a3a3a3; font-size: 0.8rem; margin-top: 16px; text-align: center; }
    .info a { color: #3b82f6; text-decoration: none; }
  </style>
</head>
<body>
  <div class="card">
    <h2>Authorize $server_name</h2>
    <p class="subtitle">Enter your API key to connect this MCP server to your client.</p>
    <form id="authForm" method="POST" action="/authorize/submit">
      <input type="hidden" name="client_id" value="$client_id">
      <input type="hidden" name="redirect_uri" value="$redirect_uri">
      <input type="hidden" name="state" value="$state">
      <input type="hidden" name="code_challenge" value="$code_challenge">
      <input type="hidden" name="code_challenge_method" value="$code_challenge_method">
      <input type="hidden" name="scope" value="$scope">
      <input type="hidden" name="resource" value="$resource">
      <label for="api_key">API Key</label>
      <input type="text" id="api_key" name="api_key" placeholder="sk_soc_..." required autofocus>
      $error_block
      <button type="submit" class="btn" id="submitBtn">Authorize</button>
    </form>
    <p class="info">Don't have a key? <a href="$signup_url">Get a free API key</a></p>
  </div>
</body>
</html>
""")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class OAuthGateway:
    """Orchestrates the code engine, the client registry and the key store."""

    def __init__(
        self,
        settings: Settings,
        key_store: KeyStoreAdapter,
        codes: CodeEngine,
        clients: ClientRegistry,
    ):
        self.settings = settings
        self.key_store = key_store
        self.codes = codes
        self.clients = clients

    @property
    def issuer(self) -> str:
        return self.settings.issuer_url

    # ----- discovery -----

    def protected_resource_metadata(self) -> dict[str, Any]:
        return {
            "resource": self.issuer,
            "authorization_servers": [self.issuer],
            "scopes_supported": [DEFAULT_SCOPE],
            "bearer_methods_supported": ["header"],
        }

    def authorization_server_metadata(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "registration_endpoint": f"{self.issuer}/register",
            "scopes_supported": [DEFAULT_SCOPE],
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "code_challenge_methods_supported": list(SUPPORTED_CHALLENGE_METHODS),
            "client_id_metadata_document_supported": True,
        }

    # ----- registration -----

    def register_client(self, body: Any) -> ClientRegistered | OAuthErrorResult:
        try:
            return ClientRegistered(self.clients.register(body))
        except RegistrationError as exc:
            logger.warning("Client registration rejected: %s", exc)
            return OAuthErrorResult("invalid_request")

    # ----- authorize -----

    def _check_authorize_params(self, params: AuthorizeParams) -> BadAuthorizeRequest | None:
        if not params.redirect_uri:
            return BadAuthorizeRequest("Missing redirect_uri")

        parsed = urlparse(params.redirect_uri)
        if not parsed.scheme or not parsed.netloc:
            return BadAuthorizeRequest("Invalid redirect_uri")

        if params.code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
            return BadAuthorizeRequest("Unsupported code_challenge_method")

        client = self.clients.get(params.client_id) if params.client_id else None
        if client is not None and not client.allows_redirect(params.redirect_uri):
            logger.warning(
                "redirect_uri not registered for client",
                extra={
                    "log_data": {
                        "client_id": params.client_id,
                        "redirect_uri": params.redirect_uri,
                        "strict": self.settings.strict_redirect_uris,
                    }
                },
            )
            if self.settings.strict_redirect_uris:
                return BadAuthorizeRequest("redirect_uri not registered for this client")
        return None

    def begin_authorization(self, query: Mapping[str, Any]) -> ShowCredentialForm | BadAuthorizeRequest:
        """GET /authorize: show the key entry page, or 400 if there is nowhere to redirect."""
        params = AuthorizeParams.from_mapping(query)
        problem = self._check_authorize_params(params)
        if problem is not None:
            return problem
        return ShowCredentialForm(params)

    async def submit_credential(
        self, form: Mapping[str, Any]
    ) -> ShowCredentialForm | RedirectWithCode | BadAuthorizeRequest:
        """
        POST /authorize/submit: validate the typed key and issue a code.

        A rejected key re-renders the form with the key store's message and
        every hidden parameter intact; no code is issued in that case.
        """
        params = AuthorizeParams.from_mapping(form)
        problem = self._check_authorize_params(params)
        if problem is not None:
            return problem

        api_key = str(form.get("api_key") or "").strip()
        result = await self.key_store.validate(api_key or None)
        if not result.valid:
            logger.warning(
                "Authorization rejected: invalid API key",
                extra={
                    "log_data": {
                        "client_id": params.client_id,
                        "key": preview(api_key),
                        "decision": "rejected",
                        "reason": result.error,
                    }
                },
            )
            return ShowCredentialForm(params, error=result.error or "Invalid API key")

        code = self.codes.issue(
            client_id=params.client_id,
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            api_key=api_key,
            scope=params.scope,
            resource=params.resource,
        )
        logger.info(
            "Authorization granted",
            extra={
                "log_data": {
                    "client_id": params.client_id,
                    "tier": result.tier,
                    "name": result.name,
                    "decision": "authorized",
                }
            },
        )
        return RedirectWithCode(
            add_query_params(params.redirect_uri, {"code": code, "state": params.state})
        )

    # ----- token -----

    def exchange_token(self, params: Mapping[str, str]) -> TokenGranted | OAuthErrorResult:
        """POST /token: redeem a code + verifier for the API key."""
        if params.get("grant_type") != "authorization_code":
            return OAuthErrorResult("unsupported_grant_type")

        code = params.get("code")
        code_verifier = params.get("code_verifier")
        if not code or not code_verifier:
            return OAuthErrorResult(
                "invalid_request", "code and code_verifier are required"
            )

        try:
            grant = self.codes.redeem(
                code,
                code_verifier,
                redirect_uri=params.get("redirect_uri") or None,
                require_redirect_uri=self.settings.require_token_redirect_uri,
            )
        except GrantError as exc:
            return OAuthErrorResult("invalid_grant", exc.description)

        return TokenGranted(
            access_token=grant.api_key,
            scope=grant.scope,
            expires_in=self.settings.access_token_expires_in,
        )

    # ----- rendering -----

    def render_form(self, outcome: ShowCredentialForm) -> str:
        params = outcome.params
        error_block = ""
        if outcome.error:
            error_block = f'<div class="error" id="errorMsg">{html.escape(outcome.error)}</div>'

        fields = {
            "client_id": params.client_id,
            "redirect_uri": params.redirect_uri,
            "state": params.state,
            "code_challenge": params.code_challenge,
            "code_challenge_method": params.code_challenge_method,
            "scope": params.scope,
            "resource": params.resource or "",
            "server_name": self.settings.server_name,
            "signup_url": f"{self.issuer}/signup",
        }
        escaped = {name: html.escape(value, quote=True) for name, value in fields.items()}
        return AUTHORIZE_PAGE.substitute(escaped, error_block=error_block)

    def to_response(self, outcome: Outcome) -> Response:
        if isinstance(outcome, ShowCredentialForm):
            return HTMLResponse(self.render_form(outcome))
        if isinstance(outcome, BadAuthorizeRequest):
            return PlainTextResponse(outcome.message, status_code=400)
        if isinstance(outcome, RedirectWithCode):
            return RedirectResponse(outcome.location, status_code=302)
        if isinstance(outcome, TokenGranted):
            return JSONResponse(
                outcome.to_json(),
                headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
            )
        if isinstance(outcome, ClientRegistered):
            return JSONResponse(outcome.client.to_metadata(), status_code=201)
        if isinstance(outcome, OAuthErrorResult):
            return JSONResponse(outcome.to_json(), status_code=outcome.status_code)
        raise TypeError(f"Unhandled OAuth outcome: {outcome!r}")

    # ----- Starlette endpoints -----

    async def handle_protected_resource(self, request: Request) -> Response:
        return JSONResponse(self.protected_resource_metadata())

    async def handle_authorization_server(self, request: Request) -> Response:
        return JSONResponse(self.authorization_server_metadata())

    async def handle_register(self, request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return self.to_response(OAuthErrorResult("invalid_request"))
        return self.to_response(self.register_client(body))

    async def handle_authorize(self, request: Request) -> Response:
        return self.to_response(self.begin_authorization(request.query_params))

    async def handle_authorize_submit(self, request: Request) -> Response:
        form = await request.form()
        return self.to_response(await self.submit_credential(form))

    async def handle_token(self, request: Request) -> Response:
        try:
            params = await read_token_params(request)
        except ValueError:
            return self.to_response(OAuthErrorResult("invalid_request", "malformed request body"))
        return self.to_response(self.exchange_token(params))

    def routes(self) -> list[Route]:
        return [
            Route(PROTECTED_RESOURCE_PATH, self.handle_protected_resource, methods=["GET"]),
            Route(f"{PROTECTED_RESOURCE_PATH}/mcp", self.handle_protected_resource, methods=["GET"]),
            Route("/.well-known/oauth-authorization-server", self.handle_authorization_server, methods=["GET"]),
            Route("/.well-known/openid-configuration", self.handle_authorization_server, methods=["GET"]),
            Route("/register", self.handle_register, methods=["POST"]),
            Route("/authorize", self.handle_authorize, methods=["GET"]),
            Route("/authorize/submit", self.handle_authorize_submit, methods=["POST"]),
            Route("/token", self.handle_token, methods=["POST"]),
        ]


async def read_token_params(request: Request) -> dict[str, str]:
    """
    Parse a token request body as form data, JSON, or (by default) form data.

    Raises:
        ValueError: If the body cannot be parsed.
    """
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("token request body must be a JSON object")
        return {k: str(v) for k, v in body.items() if v is not None}
    if "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    raw = await request.body()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError("token request body is not valid UTF-8") from exc
    return dict(parse_qsl(text, keep_blank_values=True))
