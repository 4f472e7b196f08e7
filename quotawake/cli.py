"""Command-line access to the auto-trigger controller.

Usage:
    quotawake status             # accounts, schedule, last trigger
    quotawake trigger [-m MODEL] [-p PROMPT] [-a ACCOUNT]
    quotawake check              # one quota-reset check pass
    quotawake history [--clear]
    quotawake models [--refresh]
    quotawake crontab "0 7,12 * * *"
    quotawake serve              # run the HTTP API with uvicorn
"""

import argparse
import asyncio
import logging
import sys

from quotawake.config import get_settings
from quotawake.models import TriggerRecord
from quotawake.schedule.calendar import next_runs
from quotawake.trigger.controller import AutoTriggerController, build_controller

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def _print_record(record: TriggerRecord) -> None:
    status = "OK  " if record.success else "FAIL"
    source = record.trigger_source.value if record.trigger_source else "-"
    print(f"{status} {record.timestamp} [{source}] {record.account_email or '-'} ({record.duration_ms or 0}ms)")
    if record.message:
        for line in record.message.splitlines():
            print(f"     {line}")


async def _status(controller: AutoTriggerController) -> int:
    state = await controller.get_state()
    auth = state.authorization
    print(f"Accounts: {len(auth.accounts)} (active: {auth.active_account or '-'})")
    for account in auth.accounts:
        marker = "*" if account.is_active else " "
        invalid = " [invalid]" if account.is_invalid else ""
        print(f"  {marker} {account.email}{invalid}")
    print(f"Mode: {state.mode.value}")
    print(f"Schedule: {controller.describe_schedule(state.schedule)}")
    print(f"Models: {', '.join(state.schedule.selected_models) or '-'}")
    print(f"Next trigger: {state.next_trigger_time or '-'}")
    if state.last_trigger:
        print("Last trigger:")
        _print_record(state.last_trigger)
    return 0


async def _trigger(controller: AutoTriggerController, args: argparse.Namespace) -> int:
    result = await controller.trigger_now(
        models=args.model or None,
        prompt=args.prompt,
        accounts=args.account or None,
        max_output_tokens=args.max_tokens,
    )
    if result.success:
        print(result.response or "")
        print(f"\nDone in {result.duration_ms or 0}ms")
        return 0
    print(f"Trigger failed: {result.error}", file=sys.stderr)
    return 1


async def _check(controller: AutoTriggerController) -> int:
    records = await controller.check_and_trigger_on_quota_reset()
    if not records:
        print("No quota resets detected")
    for record in records:
        _print_record(record)
    return 0


async def _history(controller: AutoTriggerController, clear: bool) -> int:
    if clear:
        await controller.clear_history()
        print("History cleared")
        return 0
    records = controller.history.recent()
    if not records:
        print("No triggers recorded")
    for record in records:
        _print_record(record)
    return 0


async def _models(controller: AutoTriggerController, refresh: bool) -> int:
    for model in await controller.available_models(force_refresh=refresh):
        print(f"{model.id:<32} {model.model_constant:<32} {model.display_name}")
    return 0


def _crontab(controller: AutoTriggerController, expression: str) -> int:
    valid, description, error = controller.validate_crontab(expression)
    if not valid:
        print(f"Invalid crontab: {error}", file=sys.stderr)
        return 1
    print(description)
    for run in next_runs(expression, 5):
        print(f"  {run:%Y-%m-%d %H:%M %Z}")
    return 0


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("quotawake.api.main:app", host=host, port=port)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quotawake", description="Quota keep-alive triggers")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable info logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show accounts, schedule and last trigger")

    trig = sub.add_parser("trigger", help="Send keep-alive requests now")
    trig.add_argument("-m", "--model", action="append", help="Model id (repeatable)")
    trig.add_argument("-p", "--prompt", default=None, help="Prompt text (default: 'hi')")
    trig.add_argument("-a", "--account", action="append", help="Account email (repeatable)")
    trig.add_argument("--max-tokens", type=int, default=None, help="Max output tokens (0 = no limit)")

    sub.add_parser("check", help="Run one quota-reset check pass")

    hist = sub.add_parser("history", help="Show recent triggers")
    hist.add_argument("--clear", action="store_true", help="Clear trigger history")

    mods = sub.add_parser("models", help="List available models")
    mods.add_argument("--refresh", action="store_true", help="Bypass the model cache")

    cron = sub.add_parser("crontab", help="Validate and describe a crontab expression")
    cron.add_argument("expression")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


async def _run(args: argparse.Namespace) -> int:
    controller = build_controller(get_settings())
    match args.command:
        case "status":
            return await _status(controller)
        case "trigger":
            return await _trigger(controller, args)
        case "check":
            return await _check(controller)
        case "history":
            return await _history(controller, args.clear)
        case "models":
            return await _models(controller, args.refresh)
        case "crontab":
            return _crontab(controller, args.expression)
    return 2


def main() -> None:
    """Parse arguments and run one command."""
    args = _build_parser().parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    if args.command == "serve":
        sys.exit(_serve(args.host, args.port))

    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
