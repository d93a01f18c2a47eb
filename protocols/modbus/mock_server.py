"""
Scripted Modbus TCP Endpoint
============================

Test double for the client: accepts connections, records every command it
receives, and answers each one with a configured response. It does not
parse requests, so it can return deliberately broken frames (truncated
headers, exception flags, short payloads) as easily as valid ones.

The asyncio server runs on its own event loop in a background thread, so
blocking client code can talk to it from the test thread.

Usage:
    server = MockModbusServer()
    port = server.open()
    server.set_next_response(bytes([0, 1, 0, 0, 0, 6, 1, 0x06, 0]))
    ...
    server.close()
"""

import asyncio
import logging
import threading
from typing import List, Optional


logger = logging.getLogger(__name__)


class MockModbusServer:
    """Scripted-response Modbus TCP endpoint."""

    def __init__(self, host: str = '127.0.0.1'):
        self.host = host
        self.port: Optional[int] = None

        self.received: List[bytes] = []
        self._response: Optional[bytes] = None
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self.connections: List[asyncio.StreamWriter] = []

        self.stats = {
            "connections_total": 0,
            "connections_active": 0,
            "requests": 0,
            "bytes_received": 0,
            "bytes_sent": 0,
        }

    def open(self, port: int = 0) -> int:
        """
        Start listening.

        Args:
            port: TCP port (0 = auto-select)

        Returns:
            Port actually bound
        """
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever,
                                        name="MockModbusServer", daemon=True)
        self._thread.start()

        future = asyncio.run_coroutine_threadsafe(self._start(port), self._loop)
        future.result(timeout=5)
        return self.port

    async def _start(self, port: int):
        self.server = await asyncio.start_server(self._handle_connection, self.host, port)
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Mock Modbus server listening on {self.host}:{self.port}")

    def close(self):
        """Stop the server and its event loop."""
        if self._loop is None:
            return

        asyncio.run_coroutine_threadsafe(self._stop(), self._loop).result(timeout=5)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop.close()
        self._loop = None
        logger.info("Mock Modbus server stopped")

    async def _stop(self):
        await self._drop_all()
        if self.server:
            self.server.close()
            await self.server.wait_closed()

    def set_next_response(self, response: Optional[bytes]):
        """Answer every following command with response (None = stay silent)."""
        with self._lock:
            self._response = bytes(response) if response is not None else None

    def drop_clients(self):
        """Close every open client connection, as a rebooting controller would."""
        asyncio.run_coroutine_threadsafe(self._drop_all(), self._loop).result(timeout=5)

    async def _drop_all(self):
        for writer in list(self.connections):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        addr = writer.get_extra_info('peername')
        logger.info(f"Connection from {addr}")

        self.connections.append(writer)
        self.stats["connections_total"] += 1
        self.stats["connections_active"] += 1

        try:
            while True:
                data = await reader.read(256)
                if not data:
                    break

                with self._lock:
                    self.received.append(bytes(data))
                    response = self._response
                self.stats["requests"] += 1
                self.stats["bytes_received"] += len(data)

                if response is None:
                    continue

                writer.write(response)
                await writer.drain()
                self.stats["bytes_sent"] += len(response)

        except (ConnectionError, OSError) as e:
            logger.info(f"Connection from {addr} ended: {e}")
        finally:
            self.connections.remove(writer)
            self.stats["connections_active"] -= 1
            writer.close()
