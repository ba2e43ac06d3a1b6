"""Entry point for the ingestion service.

Usage::

    python -m onebox_ingest
"""

from __future__ import annotations

import asyncio

from .config import ServiceConfig
from .service import IngestionService


def main() -> None:
    service = IngestionService(ServiceConfig())
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
