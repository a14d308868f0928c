import pytest


@pytest.fixture
def anyio_backend():
    # The code under test is built on asyncio primitives; do not run it under trio.
    return "asyncio"
