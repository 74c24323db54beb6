"""Fixed-port TCP proxies in front of a Power BI Desktop engine.

Power BI Desktop starts its Analysis Services engine on a random port with a
random database id. Tools that want a stable address connect to us instead:

1. We listen on a port the user picks (loopback only, unless told otherwise)
2. Every accepted client gets its own outbound connection to the engine
3. Bytes flow both ways; with XmlaProxy the client -> engine direction is
   buffered per SOAP envelope and its database references are rewritten
4. When either direction ends, both sockets are closed

start() returns as soon as the socket is bound. stop() never blocks: it sets
the session's stopping event, cancels the accept task and closes the
listener, and relays still in flight wind down on their own. wait_closed()
is there for callers who do want to wait for them.
"""

import asyncio
import socket
from dataclasses import dataclass, replace

import logfire

from .errors import AcceptError, AlreadyRunningError, StartupError, TargetConnectError
from .events import ProxyEvents
from .pump import pump_raw, pump_rewriting, run_pump

LOOPBACK_HOST = "127.0.0.1"
ANY_HOST = "0.0.0.0"
TARGET_HOST = "localhost"

# How long a relay waits for a socket to flush on close before aborting it
CLOSE_TIMEOUT = 5.0

# Pause after a failed accept so a persistent fault (EMFILE) doesn't spin
ACCEPT_RETRY_DELAY = 0.1


@dataclass(frozen=True)
class ProxySession:
    """Configuration of the running session. Read-only once start() returns."""

    listen_port: int
    target_port: int
    allow_remote: bool = False
    target_database: str | None = None

    @property
    def bind_host(self) -> str:
        return ANY_HOST if self.allow_remote else LOOPBACK_HOST

    @property
    def network_access(self) -> str:
        return "Enabled" if self.allow_remote else "Localhost only"


def _format_peer(peername) -> str:
    if isinstance(peername, tuple) and len(peername) >= 2:
        return f"{peername[0]}:{peername[1]}"
    return str(peername)


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    """Close one side of a connection, aborting it if it won't flush."""
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
    except asyncio.TimeoutError:
        writer.transport.abort()
    except OSError:
        pass


class TcpProxy:
    """Plain bidirectional forwarder: listen_port -> localhost:target_port.

    Usage:
        proxy = TcpProxy(events=ProxyEvents(on_log=print, on_error=print))
        await proxy.start(55555, engine_port)
        ...
        proxy.stop()
    """

    def __init__(
        self,
        events: ProxyEvents | None = None,
        target_host: str = TARGET_HOST,
    ):
        self.events = events or ProxyEvents()
        self.target_host = target_host

        self._session: ProxySession | None = None
        self._listener: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None
        self._starting = False
        self._relays: set[asyncio.Task] = set()
        # Accept tasks cancelled by stop() but not yet finished
        self._retired: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> ProxySession | None:
        return self._session

    @property
    def listen_port(self) -> int | None:
        """The bound port (the real one, if 0 was asked for)."""
        return self._session.listen_port if self._session else None

    @property
    def target_port(self) -> int | None:
        return self._session.target_port if self._session else None

    @property
    def active_connections(self) -> int:
        return len(self._relays)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, listen_port: int, target_port: int, allow_remote: bool = False) -> None:
        """Start forwarding ``listen_port`` to ``target_port``.

        Raises:
            AlreadyRunningError: a session is already active
            StartupError: the listening socket could not be bound
        """
        await self._start(
            ProxySession(
                listen_port=listen_port,
                target_port=target_port,
                allow_remote=allow_remote,
            )
        )

    async def _start(self, session: ProxySession) -> None:
        if self._session is not None or self._starting:
            raise AlreadyRunningError()

        self._starting = True
        try:
            try:
                # OverflowError: port outside 0..65535
                listener = socket.create_server((session.bind_host, session.listen_port))
            except (OSError, OverflowError) as e:
                self.events.error(f"Failed to start proxy: {e}")
                raise StartupError(f"Failed to start proxy: {e}", cause=e) from e
            listener.setblocking(False)

            if session.listen_port == 0:
                session = replace(session, listen_port=listener.getsockname()[1])

            stopping = asyncio.Event()
            self._listener = listener
            self._stopping = stopping
            self._session = session
            self._accept_task = asyncio.create_task(
                self._accept_loop(session, stopping, listener)
            )
        finally:
            self._starting = False

        self._log_started(session)

    def stop(self) -> None:
        """Stop accepting and signal every relay to wind down. Idempotent."""
        if self._session is None:
            return

        if self._stopping is not None:
            self._stopping.set()

        if self._accept_task is not None:
            self._accept_task.cancel()
            self._retired.add(self._accept_task)
            self._accept_task.add_done_callback(self._retired.discard)

        try:
            if self._listener is not None:
                self._listener.close()
        except OSError as e:
            self.events.error(f"Error stopping proxy: {e}")

        self._listener = None
        self._accept_task = None
        self._stopping = None
        self._session = None
        self.events.log("Proxy stopped")

    async def wait_closed(self) -> None:
        """Wait for relays that were running at stop() time to finish."""
        tasks = [*self._retired, *self._relays]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _log_started(self, session: ProxySession) -> None:
        self.events.log(
            f"Proxy started on port {session.listen_port}, forwarding to port {session.target_port}"
        )
        self.events.log(f"Network access: {session.network_access}")

    # -------------------------------------------------------------------------
    # Accept loop
    # -------------------------------------------------------------------------

    async def _accept(self, listener: socket.socket) -> tuple[socket.socket, object]:
        try:
            return await asyncio.get_running_loop().sock_accept(listener)
        except OSError as e:
            raise AcceptError(e) from e

    async def _accept_loop(
        self,
        session: ProxySession,
        stopping: asyncio.Event,
        listener: socket.socket,
    ) -> None:
        """Accept clients until stop(). Each one gets its own relay task."""
        while not stopping.is_set():
            try:
                conn, peername = await self._accept(listener)
            except AcceptError as e:
                if stopping.is_set():
                    # Listener closed by stop()
                    break
                self.events.error(str(e))
                await asyncio.sleep(ACCEPT_RETRY_DELAY)
                continue

            if stopping.is_set():
                conn.close()
                break

            peer = _format_peer(peername)
            self.events.log(f"Client connected from {peer}")

            task = asyncio.create_task(self._handle_client(session, stopping, conn, peer))
            self._relays.add(task)
            task.add_done_callback(self._relays.discard)

    # -------------------------------------------------------------------------
    # Per-connection relay
    # -------------------------------------------------------------------------

    async def _handle_client(
        self,
        session: ProxySession,
        stopping: asyncio.Event,
        conn: socket.socket,
        peer: str,
    ) -> None:
        """Entry point for each accepted connection."""
        try:
            client_reader, client_writer = await asyncio.open_connection(sock=conn)
        except OSError as e:
            conn.close()
            self.events.error(f"Error handling client: {e}")
            return

        if stopping.is_set():
            await _close_writer(client_writer)
            return

        with logfire.span("proxy.relay", peer=peer, target_port=session.target_port):
            await self._relay(session, stopping, client_reader, client_writer)

    async def _open_target(
        self, port: int
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.open_connection(self.target_host, port)
        except OSError as e:
            raise TargetConnectError(port, e) from e

    async def _relay(
        self,
        session: ProxySession,
        stopping: asyncio.Event,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        try:
            target_reader, target_writer = await self._open_target(session.target_port)
        except TargetConnectError as e:
            if not stopping.is_set():
                self.events.error(f"Error handling client: {e}")
            await _close_writer(client_writer)
            return

        self.events.log(f"Established connection to target port {session.target_port}")

        upstream = asyncio.create_task(
            run_pump(
                "client->target",
                self._client_to_target(session, stopping, client_reader, target_writer),
            )
        )
        downstream = asyncio.create_task(
            run_pump("target->client", pump_raw(target_reader, client_writer, stopping))
        )
        stop_signal = asyncio.create_task(stopping.wait())

        try:
            # First one out wins; a half-open relay would leak both sockets
            await asyncio.wait(
                {upstream, downstream, stop_signal},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_signal.cancel()
            await _close_writer(client_writer)
            await _close_writer(target_writer)
            for pump in (upstream, downstream):
                if not pump.done():
                    pump.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)

        self.events.log("Client disconnected")

    def _client_to_target(
        self,
        session: ProxySession,
        stopping: asyncio.Event,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        """Pump for the client -> target direction. Raw here."""
        return pump_raw(reader, writer, stopping)


class XmlaProxy(TcpProxy):
    """TcpProxy that rewrites database references in client requests.

    Usage:
        proxy = XmlaProxy()
        await proxy.start(55555, instance.port, instance.database_name)
    """

    @property
    def target_database(self) -> str | None:
        return self._session.target_database if self._session else None

    async def start(
        self,
        listen_port: int,
        target_port: int,
        target_database: str,
        allow_remote: bool = False,
    ) -> None:
        """Start forwarding, rewriting requests to hit ``target_database``.

        Raises:
            AlreadyRunningError: a session is already active
            StartupError: the listening socket could not be bound
        """
        await self._start(
            ProxySession(
                listen_port=listen_port,
                target_port=target_port,
                allow_remote=allow_remote,
                target_database=target_database,
            )
        )

    def _log_started(self, session: ProxySession) -> None:
        self.events.log(f"XMLA Proxy started on port {session.listen_port}")
        self.events.log(
            f"Forwarding to port {session.target_port}, database: {session.target_database}"
        )
        self.events.log(f"Network access: {session.network_access}")

    def _client_to_target(self, session, stopping, reader, writer):
        return pump_rewriting(reader, writer, stopping, session.target_database)
