#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from repairmatch.services.watchdog import DueAction, TimeoutWatchdog, timeout_watchdog


def build_report(issued: List[DueAction]) -> Dict[str, Any]:
    action_counts: Counter[str] = Counter(due.action for due in issued)
    return {
        "issued": len(issued),
        "action_counts": dict(action_counts),
        "requests": [due.request_id for due in issued],
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Issued actions: {report['issued']}")
    for action, count in sorted(report["action_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {action}: {count}")


def run_sweep(watchdog: TimeoutWatchdog, client_id: Optional[str] = None) -> Dict[str, Any]:
    return build_report(watchdog.tick(client_id=client_id))


def main() -> int:
    parser = argparse.ArgumentParser(description="Advance expired direct invitations and pending match rounds.")
    parser.add_argument("--client-id", default="", help="Only sweep requests owned by this client.")
    parser.add_argument("--loop-seconds", type=float, default=0.0, help="Repeat every N seconds instead of once.")
    parser.add_argument("--json-out", default="", help="Optional path to write the last JSON summary.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    while True:
        report = run_sweep(timeout_watchdog, client_id=args.client_id or None)
        print_human(report)
        if args.json_out:
            path = Path(args.json_out)
            path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
            print(f"Wrote report: {path}")
        if args.loop_seconds <= 0:
            return 0
        time.sleep(args.loop_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
