"""Command-line runner for the anomaly engine.

Reads one JSON request per line and writes one DetectionResult per line.

Usage:
    python -m src.main --input requests.jsonl
    cat requests.jsonl | python -m src.main --no-kafka

Each request line looks like:
    {"transaction_id": "t-1", "transaction_type": "transfer", "user_id": 42,
     "context": {"amount": 2500, "hour_of_day": 3, ...}}
"""

import argparse
import asyncio
import json
import sys
from typing import TextIO

import structlog

from src.config import settings
from src.domains.anomaly.config import AnomalyConfig
from src.domains.anomaly.factory import start_engine
from src.domains.anomaly.orchestrator import AnomalyDetectionOrchestrator
from src.shared.logging import setup_logging

logger = structlog.get_logger()


async def process_stream(
    orchestrator: AnomalyDetectionOrchestrator, source: TextIO, sink: TextIO
) -> int:
    """Score every request line in ``source``. Returns the number of requests scored."""
    processed = 0
    for line_no, line in enumerate(source, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("invalid_request_line", line_no=line_no)
            continue

        result = await orchestrator.detect_anomalies(
            request.get("context") or {},
            transaction_id=request.get("transaction_id"),
            transaction_type=request.get("transaction_type"),
            user_id=request.get("user_id"),
        )
        sink.write(
            json.dumps(
                {"transaction_id": request.get("transaction_id"), **result.model_dump(mode="json")}
            )
            + "\n"
        )
        processed += 1
    return processed


async def run(input_path: str | None, connect_kafka: bool) -> None:
    config = AnomalyConfig.from_env()
    engine = await start_engine(settings, config, connect_kafka=connect_kafka)
    try:
        if input_path:
            with open(input_path) as f:
                processed = await process_stream(engine.orchestrator, f, sys.stdout)
        else:
            processed = await process_stream(engine.orchestrator, sys.stdin, sys.stdout)
        logger.info("anomaly_batch_completed", processed=processed)
    finally:
        await engine.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Transaction anomaly engine")
    parser.add_argument("--input", type=str, default=None, help="JSONL file (default: stdin)")
    parser.add_argument(
        "--no-kafka", action="store_true", help="Do not publish AnomalyDetected events"
    )
    args = parser.parse_args()

    setup_logging(settings.log_level, json_logs=settings.json_logs)
    logger.info("anomaly_engine_starting", app_name=settings.app_name, version=settings.app_version)
    asyncio.run(run(args.input, connect_kafka=not args.no_kafka))


if __name__ == "__main__":
    main()
