"""Entry point: ``python -m libero``."""

import asyncio

from libero.app import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
