"""Test package for bridge unit and integration tests."""

import logging
import warnings

warnings.filterwarnings(
    "ignore",
    message=r".*drain.*deprecated.*",
    category=DeprecationWarning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
