#!/usr/bin/env python
"""Inspect or seed the persisted credential pool.

Operators use this to look at the pool the relay will load, to hand it
credentials minted outside the relay, or to reset it.  The store backend and
key are taken from the same settings the relay uses.

Usage::

    python scripts/seed_pool.py show
    python scripts/seed_pool.py add hf_aaa hf_bbb
    cat keys.txt | python scripts/seed_pool.py add -
    python scripts/seed_pool.py clear --yes

Environment variables (via .env or shell)::

    STORE_BACKEND, GITHUB_TOKEN, GITHUB_OWNER, GITHUB_REPO, POOL_STORAGE_KEY

``show`` prints slot states with credentials masked.  ``add`` fills empty
slots first and appends after that, skipping credentials already present.
Run it while the relay is stopped: a running relay keeps its own in-memory
pool and overwrites the store on its next persist.

Exit codes:
    0: Success.
    1: Configuration or storage error.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure the src layout is on sys.path when run as a standalone script.
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_SRC_DIR = os.path.join(os.path.dirname(_SCRIPT_DIR), "src")
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)


def _mask(token: str) -> str:
    return f"{token[:4]}…{token[-2:]}" if len(token) > 8 else "…"


async def _run(command: str, tokens: list[str], confirmed: bool) -> int:
    """Execute one subcommand against the configured store.

    Returns:
        Process exit code.
    """
    from key_relay.config.settings import get_settings  # noqa: PLC0415
    from key_relay.core.credential_pool import Active, CredentialPool  # noqa: PLC0415
    from key_relay.core.exceptions import StorageError  # noqa: PLC0415
    from key_relay.storage import build_store  # noqa: PLC0415

    settings = get_settings()
    if settings.store_backend == "memory":
        print(
            "[seed_pool] WARNING: STORE_BACKEND=memory keeps nothing after this "
            "script exits.",
            file=sys.stderr,
        )
    try:
        store = build_store(settings)
    except ValueError as exc:
        print(f"[seed_pool] ERROR: {exc}", file=sys.stderr)
        return 1

    key = settings.pool_storage_key
    try:
        raw = await store.get(key)
        pool = CredentialPool.from_json(raw) if raw is not None else CredentialPool()

        if command == "show":
            print(f"[seed_pool] {key}: {len(pool)} slots, {pool.active_count} active")
            for index, slot in enumerate(pool):
                state = _mask(slot.token) if isinstance(slot, Active) else "(empty)"
                print(f"  {index:>3}  {state}")
            return 0

        if command == "add":
            added = 0
            for token in tokens:
                if token in pool:
                    print(f"[seed_pool] Skipping duplicate {_mask(token)}")
                    continue
                index = pool.place(token)
                added += 1
                print(f"[seed_pool] {_mask(token)} -> slot {index}")
            if added:
                await store.set(key, pool.to_json())
            print(f"[seed_pool] Added {added}; pool now has {pool.active_count} active.")
            return 0

        if not confirmed:
            print("[seed_pool] Refusing to clear without --yes.", file=sys.stderr)
            return 1
        deleted = await store.delete(key)
        print(f"[seed_pool] {'Deleted' if deleted else 'Nothing stored under'} {key}.")
        return 0
    except (StorageError, ValueError) as exc:
        print(f"[seed_pool] ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        await store.aclose()


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Inspect or seed the persisted credential pool.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="Print slot states with credentials masked.")
    add = sub.add_parser("add", help="Place credentials into the pool.")
    add.add_argument(
        "tokens",
        nargs="+",
        help="Credentials to add, or '-' to read one per line from stdin.",
    )
    clear = sub.add_parser("clear", help="Delete the persisted pool.")
    clear.add_argument("--yes", action="store_true", default=False, help="Confirm deletion.")
    return parser.parse_args()


def main() -> None:
    """Entry point for the pool seeding script."""
    args = _parse_args()
    tokens: list[str] = []
    if args.command == "add":
        for value in args.tokens:
            if value == "-":
                tokens.extend(line.strip() for line in sys.stdin if line.strip())
            else:
                tokens.append(value.strip())
    sys.exit(asyncio.run(_run(args.command, tokens, getattr(args, "yes", False))))


if __name__ == "__main__":
    main()
