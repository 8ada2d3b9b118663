"""
Replay Module Entry Point

Allows execution via: python -m apps.replay
"""

import asyncio

from apps.replay.consumer import main

if __name__ == "__main__":
    asyncio.run(main())
