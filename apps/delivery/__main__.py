"""
Delivery Module Entry Point

Allows execution via: python -m apps.delivery
"""

import asyncio

from apps.delivery.consumer import main

if __name__ == "__main__":
    asyncio.run(main())
