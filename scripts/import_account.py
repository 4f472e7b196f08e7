"""Import an OAuth credential from a JSON file into the credential store.

The file must hold at least ``email`` and ``refresh_token``; ``access_token``,
``expires_at`` and ``project_id`` are optional.

Usage:
    python -m scripts.import_account path/to/credential.json
"""

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from quotawake.config import get_settings
from quotawake.models import OAuthCredential
from quotawake.trigger.controller import build_controller

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def main(path: str) -> None:
    try:
        with open(path) as f:
            credential = OAuthCredential.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Cannot read credential from {path}: {e}", file=sys.stderr)
        sys.exit(1)

    if not credential.refresh_token:
        print("Credential has no refresh_token; it could never be refreshed", file=sys.stderr)
        sys.exit(1)

    controller = build_controller(get_settings())
    await controller.import_account(credential)
    print(f"Imported {credential.email}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("path", help="JSON credential file")
    asyncio.run(main(parser.parse_args().path))
