import argparse
import asyncio
import json
import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run one portfolio scan cycle against the configured store."
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Run the rebalance workers until every queued rebalance has finished.",
    )
    args = parser.parse_args()

    from src.api.observability import configure_logging

    configure_logging()
    summary = asyncio.run(_run(drain=args.drain))
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if summary.get("aborted_reason") is None else 2


async def _run(*, drain: bool) -> dict:
    from src.api.runtime_config import build_runtime
    from src.core.orchestration import REBALANCE_QUEUE

    runtime = await build_runtime()
    orchestrator = runtime.orchestrator
    try:
        if drain:
            orchestrator.start()
        summary = await orchestrator.run_scan_cycle()
        if drain:
            for queue in orchestrator.queues:
                if queue.name == REBALANCE_QUEUE:
                    await queue.wait_until_idle()
        return summary.model_dump()
    finally:
        await orchestrator.stop()
        await runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
