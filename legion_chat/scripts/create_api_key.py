from __future__ import annotations

import argparse
import asyncio

from legion_chat.db.models import ApiKey
from legion_chat.db.session import dispose_engine, session_scope
from legion_chat.services.auth import generate_api_key, hash_api_key


async def create_api_key(account_id: str, name: str = "default", rate_limit_per_min: int = 60) -> str:
    """Store the hash of a fresh key for ``account_id`` and return the plaintext."""
    plaintext = generate_api_key()
    async with session_scope() as session:
        session.add(
            ApiKey(
                account_id=account_id,
                key_hash=hash_api_key(plaintext),
                name=name,
                rate_limit_per_min=rate_limit_per_min,
            )
        )
    return plaintext


async def _run(args: argparse.Namespace) -> str:
    try:
        return await create_api_key(args.account_id, args.name, args.rate_limit_per_min)
    finally:
        await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an API key acting as a NEAR account (prints plaintext once).")
    parser.add_argument("--account-id", required=True, help="e.g. alice.near")
    parser.add_argument("--name", default="default")
    parser.add_argument("--rate-limit-per-min", type=int, default=60, help="0 disables the per-key limit")
    plaintext = asyncio.run(_run(parser.parse_args()))

    # Shown once; only the HMAC is stored.
    print(plaintext)


if __name__ == "__main__":
    main()
