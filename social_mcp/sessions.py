"""
Session multiplexer for the MCP Streamable HTTP endpoint.

Many MCP clients talk to the same /mcp endpoint at once. Each client gets its
own session: a ``StreamableHTTPServerTransport`` paired with a running MCP
server loop, remembered under an opaque ``Mcp-Session-Id`` together with the
API key that opened it.

Request pipeline (every request to /mcp, or POST /):

    1. Read the body once and parse it into a ``ProtocolRequest``
    2. Extract the credential (see ``credentials.extract_credential``)
    3. Authenticate:
       - no credential + POST + only discovery methods (initialize, tools/list,
         notifications/initialized) -> allowed at the synthetic "discovery" tier
       - otherwise the key store must accept the credential, else 401 / -32001
    4. A body that is not decodable JSON is answered with 400 / -32700 here,
       before any session or usage debit is involved
    5. Route:
       - known session id -> that session's transport; a tools/call first
         debits one usage unit per call from the presented key
       - no session + POST -> open a new session (debits once if keyed)
       - no session + anything else -> 400 / -32000 "initialize first"

The body read in step 1 is replayed to the transport, which reads it again
through the normal ASGI ``receive`` channel.

Sessions end when the client sends DELETE, when the server loop exits, or at
shutdown, where every remaining session is terminated.
"""

import contextlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

from social_mcp.credentials import extract_credential
from social_mcp.keystore import KeyStoreAdapter, KeyValidation
from social_mcp.logging_config import preview
from social_mcp.oauth import unauthorized_response

logger = logging.getLogger(__name__)

DISCOVERY_METHODS = frozenset({"initialize", "tools/list", "notifications/initialized"})
TOOL_CALL_METHOD = "tools/call"
DISCOVERY_TIER = "discovery"

INITIALIZE_FIRST = "Bad request: send a POST with initialize to start a session."


@dataclass(frozen=True)
class ProtocolRequest:
    """The JSON-RPC facts the multiplexer branches on, parsed once per request."""

    methods: tuple[str, ...] = ()
    request_id: Any = None
    # The body was present but is not JSON (or nests too deeply to decode).
    malformed: bool = False

    @classmethod
    def parse(cls, body: bytes) -> "ProtocolRequest":
        if not body:
            return cls()
        try:
            payload = json.loads(body)
        except (ValueError, RecursionError):
            return cls(malformed=True)

        messages = payload if isinstance(payload, list) else [payload]
        methods = tuple(
            message["method"]
            for message in messages
            if isinstance(message, dict) and isinstance(message.get("method"), str)
        )
        request_id = payload.get("id") if isinstance(payload, dict) else None
        return cls(methods=methods, request_id=request_id)

    @property
    def is_discovery(self) -> bool:
        return bool(self.methods) and all(m in DISCOVERY_METHODS for m in self.methods)

    @property
    def is_initialize(self) -> bool:
        return "initialize" in self.methods

    @property
    def tool_calls(self) -> int:
        return sum(1 for m in self.methods if m == TOOL_CALL_METHOD)


@dataclass
class Session:
    session_id: str
    transport: StreamableHTTPServerTransport
    api_key: str
    tier: str | None
    opened_at: float


def rpc_error(status_code: int, code: int, message: str, request_id: Any = None) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id},
        status_code=status_code,
    )


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """A ``receive`` that yields the already-read body first, then defers to the real one."""
    delivered = False

    async def replay() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SessionMultiplexer:
    """
    ASGI app owning every live MCP session.

    ``run()`` must be active (normally for the app's lifespan) before requests
    arrive: session server loops are spawned into its task group.
    """

    def __init__(self, server: Server, key_store: KeyStoreAdapter, issuer_url: str):
        self._server = server
        self.key_store = key_store
        self.issuer_url = issuer_url
        self._sessions: dict[str, Session] = {}
        self._task_group: TaskGroup | None = None
        self._creation_lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    # ----- lifecycle -----

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator["SessionMultiplexer"]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session multiplexer started")
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("Session multiplexer stopped")

    async def close_all(self) -> None:
        """Terminate every open session. A failing close does not stop the others."""
        for session_id, session in list(self._sessions.items()):
            try:
                await session.transport.terminate()
            except Exception:
                logger.warning("Failed to close session %s", session_id, exc_info=True)
            self._forget(session_id, reason="shutdown")

    def _forget(self, session_id: str | None, reason: str) -> None:
        if session_id is None:
            return
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info(
                "MCP session closed",
                extra={
                    "log_data": {
                        "session_id": session_id,
                        "reason": reason,
                        "duration_s": round(time.monotonic() - session.opened_at, 3),
                    }
                },
            )

    # ----- ASGI entry point -----

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        message = ProtocolRequest()
        if request.method == "POST":
            body = await request.body()
            message = ProtocolRequest.parse(body)
            receive = _replay_body(body, receive)

        api_key = extract_credential(request)
        auth = await self._authenticate(request.method, api_key, message)
        if not auth.valid:
            logger.warning(
                "Protocol request rejected",
                extra={
                    "log_data": {
                        "method": request.method,
                        "rpc_methods": list(message.methods),
                        "rpc_id": message.request_id,
                        "key": preview(api_key),
                        "decision": "rejected",
                        "reason": auth.error,
                    }
                },
            )
            response = unauthorized_response(
                self.issuer_url, auth.error or "Authorization required"
            )
            await response(scope, receive, send)
            return

        if message.malformed:
            logger.warning(
                "Unparsable protocol request",
                extra={
                    "log_data": {
                        "key": preview(api_key),
                        "decision": "rejected",
                        "reason": "parse_error",
                    }
                },
            )
            await rpc_error(400, -32700, "Parse error: invalid JSON")(scope, receive, send)
            return

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        session = self._sessions.get(session_id) if session_id else None

        if session is not None:
            await self._route_to_session(session, request.method, api_key, message, scope, receive, send)
            return

        if request.method == "POST":
            await self._open_session(api_key, auth, message, scope, receive, send)
            return

        await rpc_error(400, -32000, INITIALIZE_FIRST)(scope, receive, send)

    async def _authenticate(
        self, method: str, api_key: str | None, message: ProtocolRequest
    ) -> KeyValidation:
        if method == "POST" and not api_key and message.is_discovery:
            return KeyValidation(valid=True, tier=DISCOVERY_TIER, name="scanner")
        return await self.key_store.validate(api_key)

    async def _route_to_session(
        self,
        session: Session,
        method: str,
        api_key: str | None,
        message: ProtocolRequest,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        # A credential is guaranteed here: tool calls never pass the discovery bypass.
        if method == "POST" and api_key:
            for _ in range(message.tool_calls):
                await self.key_store.record_usage(api_key)

        await session.transport.handle_request(scope, receive, send)

        if session.transport.is_terminated:
            self._forget(session.session_id, reason="terminated by client")

    async def _open_session(
        self,
        api_key: str | None,
        auth: KeyValidation,
        message: ProtocolRequest,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        try:
            session = await self._start_session(api_key, auth)
        except Exception:
            logger.exception("Failed to open MCP session")
            await rpc_error(500, -32603, "Internal server error")(scope, receive, send)
            return

        if api_key:
            await self.key_store.record_usage(api_key)

        # The session becomes addressable once its initialize handshake is
        # accepted; any other opening message is answered by the transport
        # and the channel discarded.
        if message.is_initialize:
            self._sessions[session.session_id] = session

        status_code = 0

        async def capture_status(event: Message) -> None:
            nonlocal status_code
            if event["type"] == "http.response.start":
                status_code = event["status"]
            await send(event)

        await session.transport.handle_request(scope, receive, capture_status)

        if message.is_initialize and status_code < 400 and not session.transport.is_terminated:
            logger.info(
                "MCP session opened",
                extra={
                    "log_data": {
                        "session_id": session.session_id,
                        "tier": auth.tier,
                        "name": auth.name,
                    }
                },
            )
            return

        self._forget(session.session_id, reason="handshake not completed")
        await session.transport.terminate()

    async def _start_session(self, api_key: str | None, auth: KeyValidation) -> Session:
        async with self._creation_lock:
            if self._task_group is None:
                raise RuntimeError("Session multiplexer is not running")

            session_id = uuid4().hex
            session = Session(
                session_id=session_id,
                transport=StreamableHTTPServerTransport(
                    mcp_session_id=session_id,
                    is_json_response_enabled=True,
                ),
                api_key=api_key or "",
                tier=auth.tier,
                opened_at=time.monotonic(),
            )
            await self._task_group.start(self._serve_session, session)
            return session

    async def _serve_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        async with session.transport.connect() as (read_stream, write_stream):
            task_status.started()
            try:
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                    stateless=False,
                )
            except Exception:
                logger.exception(
                    "MCP session crashed",
                    extra={"log_data": {"session_id": session.session_id}},
                )
            finally:
                self._forget(session.session_id, reason="server loop exited")
