"""Test package for contractmatch unit and integration tests."""

import logging
import warnings

from contractmatch.logs import configure_logging

warnings.filterwarnings(
    "ignore",
    message=r".*drain.*deprecated.*",
    category=DeprecationWarning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
configure_logging("WARNING")
