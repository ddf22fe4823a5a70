from __future__ import annotations

import asyncio
import signal

from app.config import GRADING_RECONCILE_INTERVAL_SECONDS, GRADING_WORKER_COUNT
from app.observability import get_logger, log_event
from app.runtime import build_grading_service

logger = get_logger("infomark.worker")


async def serve() -> None:
    service = build_grading_service()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # windows event loops have no signal handlers
            pass

    service.start(reconcile_interval=GRADING_RECONCILE_INTERVAL_SECONDS)
    log_event(
        logger, "worker.started", workers=GRADING_WORKER_COUNT, reconcile_interval=GRADING_RECONCILE_INTERVAL_SECONDS
    )
    try:
        await stop.wait()
    finally:
        await service.shutdown()
        log_event(logger, "worker.stopped")


def main() -> None:
    asyncio.run(serve())


if __name__ == "__main__":
    main()
