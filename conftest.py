import os
import signal

import pytest

# Reduce BLAS/OpenMP thread counts during tests; extraction already runs its own thread pool
os.environ.setdefault('OMP_NUM_THREADS', '1')
os.environ.setdefault('OPENBLAS_NUM_THREADS', '1')
os.environ.setdefault('MKL_NUM_THREADS', '1')

# Default per-test timeout in seconds. Can be overridden with TEST_TIMEOUT env var.
DEFAULT_TIMEOUT = int(os.environ.get('TEST_TIMEOUT', '30'))


def _raise_timeout(signum, frame):
    raise TimeoutError(f"Test exceeded timeout of {DEFAULT_TIMEOUT}s")


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_setup(item):
    # Only set alarm on POSIX-like systems where signal.alarm exists
    if hasattr(signal, 'alarm'):
        signal.signal(signal.SIGALRM, _raise_timeout)
        signal.alarm(DEFAULT_TIMEOUT)


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_teardown(item, nextitem):
    if hasattr(signal, 'alarm'):
        signal.alarm(0)
