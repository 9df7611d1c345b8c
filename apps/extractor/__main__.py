"""
python -m apps.extractor

Starts the extraction scheduler; RUN_ONCE=true performs a single run and exits.
"""

import asyncio

from apps.extractor.scheduler import main

if __name__ == "__main__":
    asyncio.run(main())
