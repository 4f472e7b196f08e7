"""Run one quota-reset check pass and print any triggers it fired.

Suitable for an external cron when the API service is not running.

Usage:
    python -m scripts.run_check
"""

import asyncio
import logging
import sys

from quotawake.config import get_settings
from quotawake.trigger.controller import build_controller

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main() -> None:
    """Check every selected account once."""
    try:
        controller = build_controller(get_settings())
        records = await controller.check_and_trigger_on_quota_reset()
    except Exception as e:
        print(f"Quota check failed: {e}", file=sys.stderr)
        sys.exit(1)

    for record in records:
        status = "ok" if record.success else "failed"
        print(f"{record.account_email}: {status} ({record.duration_ms}ms)")
        print(record.message or "")


if __name__ == "__main__":
    asyncio.run(main())
