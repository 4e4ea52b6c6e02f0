import logging

import pytest

from snapsift import timing
from snapsift.store import MemoryStore

# Configure logging for tests so debug information from snapsift modules
# (learning, duplicates, engine) is visible when a test fails.
handler = logging.StreamHandler()
formatter = logging.Formatter('%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s')
handler.setFormatter(formatter)
root = logging.getLogger()
if not root.handlers:
	root.addHandler(handler)
root.setLevel(logging.DEBUG)

# Reduce verbosity for noisy external libraries
logging.getLogger('PIL').setLevel(logging.WARNING)


@pytest.fixture(autouse=True)
def reset_timing():
	"""Timing stats are module-global; start every test from an empty table."""
	timing.reset_stats()
	yield
	timing.reset_stats()


@pytest.fixture
def memory_store():
	return MemoryStore()
