"""Entry point: python -m accessgate"""

from __future__ import annotations

import asyncio
import contextlib
import sys

from accessgate.core.logging import configure_logging
from accessgate.worker import run_worker


def main() -> None:
    configure_logging()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_worker())
    sys.exit(0)


if __name__ == "__main__":
    main()
