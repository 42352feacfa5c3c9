"""Test package for dmsync unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
