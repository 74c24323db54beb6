# tests/conftest.py
import asyncio
import socket

import logfire
import pytest
import pytest_asyncio

from pbi_port_wrapper.events import ProxyEvents

# Quiet and local: no console output, nothing sent even with a token set
logfire.configure(send_to_logfire=False, console=False)


class TargetServer:
    """Stand-in for the Analysis Services engine.

    Records what each connection sent. Echoes it back if asked to; closes
    every connection straight away if close_immediately is set. A greeting
    is written to every new connection before anything is read.
    """

    def __init__(
        self,
        echo: bool = True,
        close_immediately: bool = False,
        greeting: bytes = b"",
    ):
        self.echo = echo
        self.close_immediately = close_immediately
        self.greeting = greeting
        self.received: list[bytearray] = []
        self.closed: list[bool] = []
        self._writers: list[asyncio.StreamWriter] = []
        self._server: asyncio.AbstractServer | None = None
        self.port: int | None = None

    async def start(self) -> "TargetServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        index = len(self.received)
        self.received.append(bytearray())
        self.closed.append(False)
        self._writers.append(writer)
        try:
            if self.close_immediately:
                return
            if self.greeting:
                writer.write(self.greeting)
                await writer.drain()
            while data := await reader.read(8192):
                self.received[index].extend(data)
                if self.echo:
                    writer.write(data)
                    await writer.drain()
        except ConnectionError:
            pass
        finally:
            self.closed[index] = True
            writer.close()

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()


class RecordedEvents(ProxyEvents):
    """ProxyEvents that keeps everything it was asked to emit."""

    def __init__(self):
        super().__init__()
        self.logs: list[str] = []
        self.errors: list[str] = []
        self.subscribe_log(self.logs.append)
        self.subscribe_error(self.errors.append)


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll ``predicate`` until it's true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def events():
    return RecordedEvents()


@pytest_asyncio.fixture
async def target():
    server = await TargetServer().start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def make_target():
    """Factory for targets with non-default behaviour."""
    servers = []

    async def _make(**kwargs) -> TargetServer:
        server = await TargetServer(**kwargs).start()
        servers.append(server)
        return server

    yield _make
    for server in servers:
        await server.stop()


@pytest.fixture
def wait():
    return wait_until


@pytest.fixture
def free_port():
    return find_free_port()
