"""
Credential extraction for protocol requests.

MCP clients and proxies disagree on where an API key goes, so the protocol
endpoint accepts it from several places. The first non-empty one wins, in
this order:

    1. X-API-Key header
    2. apikey header
    3. ?api_key=  /  ?apiKey=  /  ?apikey=  query parameters
    4. Authorization: Bearer <key>
"""

from starlette.requests import Request

HEADER_NAMES = ("x-api-key", "apikey")
QUERY_NAMES = ("api_key", "apiKey", "apikey")


def bearer_token(authorization_header: str | None) -> str | None:
    """
    Extract the token from an ``Authorization: Bearer <token>`` header.

    The scheme is matched case-insensitively (RFC 6750). Anything that is not
    a bearer credential yields None rather than an error, so the caller falls
    through to its normal "missing key" handling.
    """
    if not authorization_header:
        return None
    parts = authorization_header.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def extract_credential(request: Request) -> str | None:
    for name in HEADER_NAMES:
        value = (request.headers.get(name) or "").strip()
        if value:
            return value
    for name in QUERY_NAMES:
        value = (request.query_params.get(name) or "").strip()
        if value:
            return value
    return bearer_token(request.headers.get("authorization"))
