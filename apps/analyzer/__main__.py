"""
Analyzer Module Entry Point

Allows execution via: python -m apps.analyzer
"""

import asyncio

from apps.analyzer.consumer import main

if __name__ == "__main__":
    asyncio.run(main())
