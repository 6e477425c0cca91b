"""Nudge daemon entry point."""

import asyncio

from nudge.core.loop import run_daemon

if __name__ == "__main__":
    asyncio.run(run_daemon())
