"""Queue worker entry point.

Usage (from a module that knows the concrete providers):

    from doc_queue.stages import Stage, StageRegistry
    from doc_queue.worker import run_worker

    registry = StageRegistry({Stage.ocr: MyOcr(), Stage.llm_enhancement: MyLlm()})
    raise SystemExit(run_worker(registry))
"""

import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from .change_bus import ChangeBus
from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .mqtt import attach_broadcaster, get_broadcaster, shutdown_broadcaster
from .orchestrator import PipelineOrchestrator
from .queue_store import QueueStore
from .schemas import QueueStatus
from .stages import StageRegistry

logger = logging.getLogger("doc-queue-worker")


async def serve(
    orchestrator: PipelineOrchestrator,
    *,
    owner_id: str | None = None,
    poll_interval: float = Config.WORKER_POLL_INTERVAL,
    stale_after_ms: int = Config.STUCK_PROCESSING_TIMEOUT_MINUTES * 60 * 1000,
    once: bool = False,
    stop_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Claim and process entries until stopped.

    Each entry runs to completion before the next claim; run several
    workers for concurrency. Stuck entries are reset whenever the queue
    runs dry.

    Args:
        orchestrator: Orchestrator that claims and runs entries
        owner_id: Only process this owner's entries
        poll_interval: Seconds to wait when nothing is claimable
        stale_after_ms: Processing age after which an entry is reset
        once: Drain the queue once and return instead of polling
        stop_event: Set to stop the loop between entries

    Returns:
        Number of entries processed
    """
    processed = 0
    while stop_event is None or not stop_event.is_set():
        entry = await orchestrator.process_next(owner_id)
        if entry is not None:
            processed += 1
            continue

        _ = orchestrator.recover_stale(stale_after_ms)
        if once:
            break
        await sleep(poll_interval)

    logger.info("Worker processed %d entries", processed)
    return processed


def run_worker(registry: StageRegistry, argv: Sequence[str] | None = None) -> int:
    """
    Run a queue worker with the given stage providers.

    This function handles:
    1. Parsing command line arguments
    2. Setting up database, change bus and MQTT forwarding
    3. Processing a single entry (--entry-id) or serving the queue
    4. Tearing everything down on exit

    Returns:
        Process exit code
    """
    parser = argparse.ArgumentParser(description="Run a document processing queue worker")
    parser.add_argument("--entry-id", help="Process only this queue entry")
    parser.add_argument("--owner", help="Only process entries owned by this user")
    parser.add_argument("--once", action="store_true", help="Drain the queue and exit")
    parser.add_argument(
        "--poll-interval", type=float, default=Config.WORKER_POLL_INTERVAL, help="Idle poll seconds"
    )
    parser.add_argument("--database-url", default=Config.DATABASE_URL, help="Queue database URL")
    args = parser.parse_args(argv)

    logging.basicConfig(level=Config.LOG_LEVEL)
    logger.info("Worker %s starting", Config.WORKER_ID)

    engine = create_db_engine(args.database_url)
    init_db(engine)

    bus = ChangeBus()
    store = QueueStore(create_session_factory(engine), bus)
    broadcaster = get_broadcaster(
        broadcast_type=Config.BROADCAST_TYPE,
        broker=Config.MQTT_BROKER,
        port=Config.MQTT_PORT,
        topic=Config.MQTT_TOPIC,
    )
    detach = attach_broadcaster(bus, broadcaster)
    orchestrator = PipelineOrchestrator(store, registry)

    try:
        if args.entry_id:
            entry = asyncio.run(orchestrator.process_entry(args.entry_id))
            if entry is None or entry.status is not QueueStatus.completed:
                return 1
            return 0

        _ = asyncio.run(
            serve(
                orchestrator,
                owner_id=args.owner,
                poll_interval=args.poll_interval,
                once=args.once,
            )
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        return 0
    finally:
        detach()
        shutdown_broadcaster()
        engine.dispose()
