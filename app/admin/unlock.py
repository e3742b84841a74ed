from __future__ import annotations

import argparse
import asyncio

from app.services.attempt_store import (
    AttemptKey,
    MemoryAttemptStore,
    StoreUnavailableError,
    build_attempt_store,
)


async def _unlock(keys: list[AttemptKey]) -> None:
    store = build_attempt_store()
    if isinstance(store, MemoryAttemptStore):
        raise ValueError("The in-memory attempt store lives inside the server process")
    for key in keys:
        await store.clear(key)
        print(f"Cleared {store.storage_id(key)}")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Clear login attempt history and lockouts for an account or IP."
    )
    parser.add_argument("--account", action="append", default=[], help="Account email.")
    parser.add_argument("--ip", action="append", default=[], help="Client IP address.")
    args = parser.parse_args()
    if not args.account and not args.ip:
        parser.error("pass at least one --account or --ip")
    return args


def main() -> None:
    args = _parse_args()
    keys = [AttemptKey.account(email) for email in args.account]
    keys.extend(AttemptKey.ip(address) for address in args.ip)
    try:
        asyncio.run(_unlock(keys))
    except (ValueError, StoreUnavailableError) as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
