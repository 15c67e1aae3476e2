import pytest

from support import BgServer, free_port, make_backend_app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def backend_urls():
    """Three real backends (b0, b1, b2) served by uvicorn in background threads."""
    servers = [BgServer(make_backend_app(f"b{i}"), "127.0.0.1", free_port()) for i in range(3)]
    for server in servers:
        server.start()
    try:
        yield [server.url for server in servers]
    finally:
        for server in servers:
            server.stop()
