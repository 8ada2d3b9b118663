"""
Indexer Module Entry Point

Allows execution via: python -m apps.indexer
"""

import asyncio

from apps.indexer.consumer import main

if __name__ == "__main__":
    asyncio.run(main())
