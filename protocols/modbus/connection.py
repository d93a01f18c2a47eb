"""
Modbus TCP Connection Manager
=============================

Owns the TCP socket to the remote controller.

Connection states:
    DISCONNECTED - No socket
    CONNECTING   - TCP connect in progress
    CONNECTED    - Socket open, ready for exchanges

Sequence:
    1. connect() opens the socket with bounded retries and exponential backoff
    2. Transceiver drives send()/receive_into() while holding its guard
    3. On a transport failure the Transceiver calls close(), then reconnect()
    4. shutdown() closes the socket (idempotent)

connect(), reconnect(), close() and shutdown() never raise: socket errors are
logged and reported as a False result. send() and receive_into() let OSError
through to the Transceiver, which decides whether to resynchronise.
"""

import ipaddress
import logging
import socket
import time
from enum import Enum
from typing import Optional

from config import MODBUS_CONFIG


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Modbus TCP connection states"""
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2


class ModbusConnection:
    """
    TCP stream to one Modbus controller.

    Attributes:
        host: Controller IPv4 address or hostname
        port: Controller TCP port
        state: Current connection state
        last_error: Text of the most recent socket error
        stats: Connection counters
    """

    def __init__(self, host: Optional[str] = None, port: int = MODBUS_CONFIG["port"],
                 connect_timeout_s: float = MODBUS_CONFIG["connect_timeout_s"],
                 receive_timeout_s: float = MODBUS_CONFIG["receive_timeout_s"],
                 reconnect_receive_timeout_s: float = MODBUS_CONFIG["reconnect_receive_timeout_s"],
                 connect_attempts: int = MODBUS_CONFIG["connect_attempts"],
                 connect_backoff_s: float = MODBUS_CONFIG["connect_backoff_s"],
                 connect_backoff_max_s: float = MODBUS_CONFIG["connect_backoff_max_s"]):
        self.host = host
        self.port = port
        self.connect_timeout_s = connect_timeout_s
        self.receive_timeout_s = receive_timeout_s
        self.reconnect_receive_timeout_s = reconnect_receive_timeout_s
        self.connect_attempts = connect_attempts
        self.connect_backoff_s = connect_backoff_s
        self.connect_backoff_max_s = connect_backoff_max_s

        self.socket: Optional[socket.socket] = None
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None

        self.stats = {
            'connections': 0,
            'disconnections': 0,
            'failed_connects': 0,
        }

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.socket is not None

    @property
    def address(self) -> Optional[int]:
        """Remote IPv4 address as a host-order integer (None for hostnames)."""
        if self.host is None:
            return None
        try:
            return int(ipaddress.IPv4Address(self.host))
        except ValueError:
            return None

    def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        """
        Open the connection, retrying with exponential backoff.

        Args:
            host: Controller address (defaults to the known host)
            port: Controller port (defaults to the known port)

        Returns:
            True if connected, False after all attempts failed
        """
        if host is not None:
            self.host = host
        if port is not None:
            self.port = port

        if self.host is None:
            self.last_error = "no remote address configured"
            logger.error("Modbus connect called without a remote address")
            return False

        self.close()
        logger.info(f"Connecting to MODBUS/TCP controller at {self.host}:{self.port}")

        for attempt in range(1, self.connect_attempts + 1):
            if self._open(self.receive_timeout_s):
                return True

            if attempt < self.connect_attempts:
                delay = min(self.connect_backoff_s * (2 ** (attempt - 1)),
                            self.connect_backoff_max_s)
                logger.warning(f"Connection to {self.host}:{self.port} failed "
                               f"(attempt {attempt}/{self.connect_attempts}), "
                               f"retrying in {delay:.2f}s")
                time.sleep(delay)

        logger.error(f"Unable to connect to MODBUS controller at {self.host}:{self.port} "
                     f"after {self.connect_attempts} attempts: {self.last_error}")
        return False

    def reconnect(self) -> bool:
        """Drop any existing socket and make one connect attempt to the known address."""
        self.close()
        if self.host is None:
            return False

        if self._open(self.reconnect_receive_timeout_s):
            logger.info(f"Reconnected to {self.host}:{self.port}")
            return True

        logger.warning(f"Error reconnecting with controller at {self.host}:{self.port}: "
                       f"{self.last_error}")
        return False

    def _open(self, receive_timeout_s: float) -> bool:
        """Single connect attempt."""
        self.state = ConnectionState.CONNECTING
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(self.connect_timeout_s)
            sock.connect((self.host, self.port))
            sock.settimeout(receive_timeout_s)
        except OSError as e:
            if sock is not None:
                sock.close()
            self.last_error = str(e)
            self.state = ConnectionState.DISCONNECTED
            self.stats['failed_connects'] += 1
            return False

        self.socket = sock
        self.state = ConnectionState.CONNECTED
        self.stats['connections'] += 1
        return True

    def send(self, data: bytes):
        """Write a whole frame. Raises OSError on transport failure."""
        if self.socket is None:
            raise ConnectionError("socket is closed")
        self.socket.sendall(data)

    def receive_into(self, buffer: bytearray) -> int:
        """
        Read whatever the controller sent into buffer.

        Returns:
            Number of bytes received; 0 on receive timeout or when the peer
            closed the stream (the connection is then marked DISCONNECTED)
        """
        if self.socket is None:
            raise ConnectionError("socket is closed")
        try:
            count = self.socket.recv_into(buffer)
        except socket.timeout:
            return 0

        if count == 0:
            logger.warning(f"Connection closed by controller {self.host}:{self.port}")
            self.state = ConnectionState.DISCONNECTED
        return count

    def close(self):
        """Drop the socket after a transport failure."""
        if self.socket is not None:
            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Error closing socket to {self.host}: {e}")
            self.socket = None
            self.stats['disconnections'] += 1
        self.state = ConnectionState.DISCONNECTED

    def shutdown(self):
        """Close the connection. Safe to call repeatedly or when never connected."""
        if self.socket is not None:
            logger.info(f"Modbus disconnected from {self.host}:{self.port}")
        self.close()

    def __str__(self):
        return (f"ModbusConnection[{self.host}:{self.port}] state={self.state.name} "
                f"connections={self.stats['connections']}")
