"""
Pytest configuration file.

This file is automatically loaded by pytest before any tests run.
It sets up the test environment configuration and shared fixtures.
"""
import asyncio
import os
import sys
from pathlib import Path

# Set APP_ENV to test before any other imports
os.environ['APP_ENV'] = 'test'
# Keep the HTTP surface from reading local registry/profile files
os.environ.pop('DATA_SOURCE_REGISTRY_PATH', None)
os.environ.pop('AUTH_PROFILES_PATH', None)

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest  # noqa: E402

from dashboard_agent.orchestration.models import ExecutorConfig  # noqa: E402


class RecordingExecutor:
    """
    Tool executor double.

    ``responses`` maps a data source to a value, an exception instance
    (raised) or a callable ``f(params)`` returning either. Every call is
    recorded in ``calls`` along with the running order in ``log``.
    """

    def __init__(self, responses=None, delays=None):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.calls = []
        self.log = []

    async def invoke(self, data_source, params):
        self.calls.append((data_source, dict(params)))
        self.log.append(("start", data_source))
        delay = self.delays.get(data_source)
        if delay:
            await asyncio.sleep(delay)
        response = self.responses.get(data_source, [])
        if callable(response):
            response = response(params)
        self.log.append(("end", data_source))
        if isinstance(response, BaseException):
            raise response
        return response

    def called(self, data_source):
        return [params for name, params in self.calls if name == data_source]


@pytest.fixture
def fast_config():
    """Executor config with tiny delays so retry tests run quickly."""
    return ExecutorConfig(
        max_concurrent=3,
        batch_size=2,
        retry_attempts=3,
        retry_delay_ms=1,
        timeout_ms=5000,
    )


@pytest.fixture
def make_executor():
    """Factory for RecordingExecutor instances."""
    return RecordingExecutor
