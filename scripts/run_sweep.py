#!/usr/bin/env python3
"""Run the reminder sweep and/or template tick once, outside the scheduler.

Usage examples:
    uv run python scripts/run_sweep.py              # both
    uv run python scripts/run_sweep.py --reminders  # reminder sweep only
    uv run python scripts/run_sweep.py --templates  # template tick only
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.main import build


async def run(templates: bool, reminders: bool) -> None:
    engine, _server = build()
    if templates:
        created = await engine.run_templates_now()
        print(f"Template tick: {created} task(s) created")
    if reminders:
        sent = await engine.run_reminders_now()
        print(f"Reminder sweep: {sent} notification(s) sent")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one reminder sweep / template tick")
    parser.add_argument("--templates", action="store_true", help="Run the template tick")
    parser.add_argument("--reminders", action="store_true", help="Run the reminder sweep")
    args = parser.parse_args()
    both = not (args.templates or args.reminders)
    asyncio.run(run(args.templates or both, args.reminders or both))


if __name__ == "__main__":
    main()
