from __future__ import annotations

"""Decay job entry point.

Applies staleness decay to every eligible source, one unit of work per source.

- SIGINT / SIGTERM stop the pass between sources; a source already in flight
  finishes its unit (score, history and decay bookkeeping commit together).
- A failing source is logged and counted; the pass continues.
- Emits one JSON object per line; the last line is the run summary.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

# Ensure backend/ is importable as top-level `app` when run as a script.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.db import get_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
import app.models as _models  # noqa: F401,E402
from reputation.core.config import load_config  # noqa: E402
from reputation.core.decay import DecayScheduler  # noqa: E402
from reputation.core.locks import KeyedLock  # noqa: E402


logger = logging.getLogger("reputation.decay")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="reputation-decay", description="Apply staleness decay to sources.")
    parser.add_argument("--dry-run", action="store_true", help="Plan decay without writing anything.")
    parser.add_argument("--max-workers", type=int, default=None, help="Override decay_max_workers.")
    args = parser.parse_args(argv)
    if args.max_workers is not None and args.max_workers < 1:
        parser.error("--max-workers must be >= 1")
    return args


def _install_signal_handlers(cancel_event: threading.Event) -> None:
    def _handler(signum, frame) -> None:
        _log({"event": "decay_cancel_requested", "signal": signal.Signals(signum).name})
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    load_env_if_present()

    try:
        config = load_config()
        session_factory = get_session_factory()
    except RuntimeError as e:
        _log({"event": "decay_config_error", "error": str(e)})
        return 2

    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event)

    scheduler = DecayScheduler(
        session_factory,
        config,
        locks=KeyedLock(timeout_seconds=config.lock_timeout_seconds),
    )
    result = scheduler.run_decay_pass(
        cancel_event=cancel_event,
        dry_run=args.dry_run,
        max_workers=args.max_workers,
    )

    for detail in result.details:
        _log(
            {
                "event": "decay_source",
                "source_id": str(detail.source_id),
                "weeks": detail.weeks,
                "decay_applied": detail.decay_applied,
                "old_score": detail.old_score,
                "new_score": detail.new_score,
                "cumulative_decay": detail.cumulative_decay,
                "dry_run": result.dry_run,
            }
        )

    for source_id, error in result.failures:
        _log({"event": "decay_source_error", "source_id": str(source_id), "error": error})

    _log(
        {
            "event": "decay_run_summary",
            "config_version": config.version,
            "processed": result.processed,
            "decayed": result.decayed,
            "cancelled": result.cancelled,
            "errors": result.errors,
            "dry_run": result.dry_run,
        }
    )
    return 1 if result.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
