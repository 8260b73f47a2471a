#!/usr/bin/env python3
"""Replay a recorded sensor log through the fusion engine.

The log is JSON lines, one sample per line:

    {"t_ns": 0, "kind": "accel", "value": [0.0, 0.0, -9.81]}
    {"t_ns": 0, "kind": "gyro", "value": [0.0, 0.0, 0.0]}
    {"t_ns": 0, "kind": "baro", "value": 1013.25}
    {"t_ns": 0, "kind": "compass_heading", "heading": 90.0, "accuracy": 5.0}
    {"t_ns": 0, "kind": "step_event", "length": 0.75, "heading": 0.0}

Ticks are issued every --tick-ms of sensor time and each pose is printed as a
JSON object on stdout.
"""

import argparse
import json
import logging
import signal
import sys
from typing import Iterable, Iterator, Optional, Tuple

from .core import load_config
from .core.errors import EngineCorrupt
from .core.types import CompassReading, Pose, SensorKind, StepInput
from .core.validation import validate_sample
from .fusion import FusionEngine

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def parse_line(line: str) -> Optional[Tuple[SensorKind, object, int]]:
    """Parse one log line into (kind, payload, t_ns).

    Blank lines and lines starting with '#' give None.

    Raises:
        ValueError: If the line is not a valid sample record.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e
    if not isinstance(record, dict):
        raise ValueError("Sample record must be a JSON object")

    try:
        kind = SensorKind(record["kind"])
        t_ns = int(record["t_ns"])
    except KeyError as e:
        raise ValueError(f"Missing field {e}") from e
    except TypeError as e:
        raise ValueError(f"Bad field type: {e}") from e

    if kind is SensorKind.COMPASS_HEADING:
        payload = CompassReading(heading=record.get("heading"),
                                 accuracy=record.get("accuracy", 0.0))
    elif kind is SensorKind.STEP_EVENT:
        payload = StepInput(length=record.get("length"), heading=record.get("heading"))
    else:
        if "value" not in record:
            raise ValueError(f"{kind.value} record needs a 'value' field")
        payload = record["value"]

    check = validate_sample(kind, payload)
    if not check.is_valid:
        raise ValueError("; ".join(check.errors))
    return kind, payload, t_ns


def replay(
    lines: Iterable[str],
    engine: FusionEngine,
    tick_interval_ns: int
) -> Iterator[Pose]:
    """Push every sample and tick on a fixed sensor-time grid.

    Malformed lines are logged and skipped.

    Yields:
        The pose after each tick.
    """
    next_tick: Optional[int] = None

    for number, line in enumerate(lines, start=1):
        if engine.is_stopped:
            return
        try:
            parsed = parse_line(line)
        except ValueError as e:
            logger.warning("Line %d skipped: %s", number, e)
            continue
        if parsed is None:
            continue

        kind, payload, t_ns = parsed
        if next_tick is None:
            next_tick = t_ns
        while t_ns > next_tick:
            yield engine.tick(next_tick)
            next_tick += tick_interval_ns
        engine.push_sample(kind, payload, t_ns)

    if next_tick is not None and not engine.is_stopped:
        yield engine.tick(next_tick)


def main() -> int:
    """Application entry point.

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(
        description="Replay a JSON-lines sensor log through the PDR fusion engine"
    )
    parser.add_argument(
        "log",
        type=str,
        help="Sensor log (JSON lines), or '-' for stdin",
    )
    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        help="Path to configuration file",
    )
    parser.add_argument(
        "-m", "--map",
        type=str,
        default=None,
        help="Vector map JSON with 'corridors' and 'walls'",
    )
    parser.add_argument(
        "--tick-ms",
        type=float,
        default=100.0,
        help="Tick interval in sensor milliseconds (default: 100)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1

    vector_map = None
    if args.map:
        with open(args.map, "r", encoding="utf-8") as f:
            vector_map = json.load(f)

    engine = FusionEngine(config, vector_map=vector_map)

    def signal_handler(signum, frame):
        logger.info("Shutdown requested")
        engine.stop()

    signal.signal(signal.SIGINT, signal_handler)

    tick_interval_ns = int(args.tick_ms * 1e6)
    stream = sys.stdin if args.log == "-" else open(args.log, "r", encoding="utf-8")
    try:
        for pose in replay(stream, engine, tick_interval_ns):
            print(json.dumps(pose.to_dict()), flush=True)
    except EngineCorrupt as e:
        logger.error("Replay aborted: %s", e)
        return 2
    finally:
        if stream is not sys.stdin:
            stream.close()

    status = engine.status()
    logger.info("Final statistics:")
    logger.info("  Ticks: %d", status.tick_count)
    logger.info("  Steps: %d, distance %.2f m",
                status.steps["step_count"], status.steps["total_distance"])
    logger.info("  ZUPT applications: %d", status.zupt_count)
    logger.info("  Diagnostics: %s", status.diagnostics)
    return 0


if __name__ == "__main__":
    sys.exit(main())
