"""Maintenance script to prune expired invites and password reset tokens.

Usage:
    uv run python scripts/prune_expired_invites.py

Environment overrides:
    INVITE_PRUNE_BATCH_SIZE=500
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from time import perf_counter

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from db.session import AsyncSessionMaker  # noqa: E402
from services.auth.password_reset import prune_expired_reset_tokens  # noqa: E402
from services.invites import PRUNE_BATCH_SIZE, prune_expired_invites  # noqa: E402

BATCH_SIZE_ENV = "INVITE_PRUNE_BATCH_SIZE"


def _parse_positive_int(raw_value: str | None, *, default: int, label: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{label} must be positive")
    return parsed


async def run() -> tuple[int, int]:
    batch_size = _parse_positive_int(
        os.getenv(BATCH_SIZE_ENV),
        default=PRUNE_BATCH_SIZE,
        label=BATCH_SIZE_ENV,
    )

    started_at = perf_counter()
    async with AsyncSessionMaker() as session:
        invites_deleted = await prune_expired_invites(session, batch_size=batch_size)
        reset_tokens_deleted = await prune_expired_reset_tokens(session)

    elapsed_ms = int((perf_counter() - started_at) * 1000)
    print(
        "Expired token prune complete: "
        f"invites_deleted={invites_deleted}, "
        f"reset_tokens_deleted={reset_tokens_deleted}, elapsed_ms={elapsed_ms}"
    )
    return invites_deleted, reset_tokens_deleted


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
