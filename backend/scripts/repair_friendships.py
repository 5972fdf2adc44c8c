"""Maintenance script to reconcile one-way friendship edges.

Friend links are written as two independent rows, so an interrupted write
can leave only one direction behind. This restores the missing reverse
edges and drops edges that point at deleted accounts.

Usage:
    uv run python scripts/repair_friendships.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from time import perf_counter

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from db.session import AsyncSessionMaker  # noqa: E402
from services.friends import RepairReport, repair_asymmetric_edges  # noqa: E402


async def run() -> RepairReport:
    started_at = perf_counter()
    async with AsyncSessionMaker() as session:
        report = await repair_asymmetric_edges(session)

    elapsed_ms = int((perf_counter() - started_at) * 1000)
    print(
        "Friendship repair complete: "
        f"edges_added={report.added}, edges_removed={report.removed}, "
        f"elapsed_ms={elapsed_ms}"
    )
    return report


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
