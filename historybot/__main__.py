"""Entry point: ``python -m historybot``."""

import asyncio

from historybot.app import main

if __name__ == "__main__":
    asyncio.run(main())
