"""Worker process entry point.

Usage:
    ebook-worker [--config config.yaml] [--concurrency N] [--once]
    python -m src.worker
"""

import argparse
import logging
import sys
from typing import Optional

from src.config import load_config
from src.executor.worker import WorkerStartupError
from src.runtime import build_runtime

logger = logging.getLogger(__name__)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the ebook-generation queue worker")
    parser.add_argument("--config", help="Path to YAML config (default: $EBOOK_CONFIG or config.yaml)")
    parser.add_argument("--concurrency", type=int, help="Jobs processed in parallel")
    parser.add_argument("--once", action="store_true", help="Process at most one job and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
        if args.concurrency:
            config.worker.concurrency = args.concurrency
        runtime = build_runtime(config)
    except Exception as e:
        logger.error(f"Failed to initialize the worker: {e}")
        return 1

    worker = runtime.build_worker()
    try:
        worker.start()
    except WorkerStartupError as e:
        logger.error(f"Worker startup failed: {e}")
        runtime.close()
        return 1

    logger.info(
        f"Worker {worker.worker_id} listening on '{config.queue.queue_name}' "
        f"(concurrency {worker.concurrency})"
    )
    if args.once:
        processed = worker.run_once()
        logger.info(f"Processed {processed} job(s)")
        worker.close()
    else:
        worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
