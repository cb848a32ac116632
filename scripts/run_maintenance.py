from __future__ import annotations

import argparse
import asyncio

from caseguard.core.logging import configure_logging
from caseguard.persistence.db import SessionLocal
from caseguard.services.gate import build_gate
from caseguard.services.maintenance import MAINTENANCE_TASKS, run_sweeps


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run CaseGuard maintenance sweeps once.")
    parser.add_argument(
        "--task",
        action="append",
        choices=MAINTENANCE_TASKS,
        help="Task to run; repeat for several. Defaults to every task.",
    )
    return parser.parse_args()


async def main(tasks: tuple[str, ...]) -> None:
    configure_logging()
    gate = build_gate()
    async with SessionLocal() as session:
        results = await run_sweeps(gate=gate, session=session, tasks=tasks)
    for task, count in results.items():
        print(f"{task}={count}")


if __name__ == "__main__":
    args = _parse_args()
    asyncio.run(main(tuple(args.task) if args.task else MAINTENANCE_TASKS))
