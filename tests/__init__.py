"""Test package for the chat harness."""

import logging
import warnings

warnings.filterwarnings(
    "ignore",
    message=r".*recommended to use web\.AppKey.*",
    category=Warning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
