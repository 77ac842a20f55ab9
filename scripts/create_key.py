"""
CLI utility to mint API keys directly in the key store file.

Self-service signups go through POST /api/keys/signup and paid tiers through
POST /api/keys/provision; this script is for operators who need a key without
going through HTTP (first deploy, support cases, local testing).

Usage examples:

    # Free key for local testing (writes to MCP_KEYS_FILE or data/api-keys.json)
    python -m scripts.create_key --name "Local dev"

    # Pro key for a customer
    python -m scripts.create_key --name "Acme" --email ops@acme.test --tier pro

    # Explicit key file
    python -m scripts.create_key --name ci --keys-file /srv/data/api-keys.json

The printed key can be used with curl:

    curl -X POST http://localhost:4202/mcp \\
      -H "Content-Type: application/json" \\
      -H "Accept: application/json, text/event-stream" \\
      -H "X-API-Key: <key>" \\
      -d '{"jsonrpc":"2.0","id":1,"method":"initialize",...}'

A running server re-reads the key file when it changes, so keys minted here
work immediately and survive the server's next usage write.
"""

import argparse
import asyncio
from pathlib import Path

from social_mcp.config import settings
from social_mcp.keystore import TIER_LIMITS, ApiKeyStore


async def create_key(keys_file: Path, name: str, tier: str, email: str | None) -> str:
    """
    Create a key in ``keys_file`` and return it.

    Args:
        keys_file: Path of the JSON key store (created if missing)
        name: Human-readable owner name
        tier: One of the TIER_LIMITS tiers
        email: Optional owner email, used for signup recovery and upgrades
    """
    store = ApiKeyStore(keys_file, upgrade_url=settings.issuer_url)
    return await store.create_key(name, tier, email)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint an API key for the social media analytics MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Free key:
    %(prog)s --name "Local dev"

  Paid tier:
    %(prog)s --name Acme --email ops@acme.test --tier pro
        """,
    )
    parser.add_argument("--name", required=True, help="Owner name stored with the key")
    parser.add_argument(
        "--tier",
        choices=list(TIER_LIMITS),
        default="free",
        help="Usage tier (default: free)",
    )
    parser.add_argument("--email", default=None, help="Owner email (optional)")
    parser.add_argument(
        "--keys-file",
        type=Path,
        default=settings.keys_file,
        help=f"Key store file (default: {settings.keys_file})",
    )

    args = parser.parse_args()

    key = asyncio.run(create_key(args.keys_file, args.name, args.tier, args.email))

    print(f"Name:       {args.name}")
    print(f"Tier:       {args.tier} ({TIER_LIMITS[args.tier]} requests/month)")
    print(f"Key file:   {args.keys_file}")
    print()
    print(f"Key: {key}")
    print()
    print("Usage with curl (initialize MCP session):")
    print(f"  curl -X POST {settings.issuer_url}/mcp \\")
    print('    -H "Content-Type: application/json" \\')
    print('    -H "Accept: application/json, text/event-stream" \\')
    print(f'    -H "X-API-Key: {key}" \\')
    print(
        '    -d \'{"jsonrpc":"2.0","id":1,"method":"initialize",'
        '"params":{"protocolVersion":"2025-03-26","capabilities":{},'
        '"clientInfo":{"name":"curl","version":"1.0"}}}\''
    )


if __name__ == "__main__":
    main()
