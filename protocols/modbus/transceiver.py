"""
Modbus TCP Transceiver
======================

Drives one request/response exchange over a ModbusConnection.

Exchange sequence:
    1. Reject empty or too-short request buffers and empty response buffers
       (caller bug, not retried)
    2. Acquire the single-flight guard (bounded wait)
    3. Reconnect once if the connection is down
    4. Stamp the next transaction ID into an exchange-owned copy of the request
    5. Up to max_send_attempts times: send, wait response_delay_s, receive
    6. If nothing came back (or the socket failed), reconnect and make exactly
       one more send/receive attempt; that result is final
    7. Release the guard on every path

The transceiver only reports how many bytes came back. Judging whether the
response is long enough, or flagged as an exception, is left to the caller.

Worst-case latency is roughly
    max_send_attempts * (send + delay + receive timeout) + reconnect + 1 attempt
which lets a dropped connection recover without the caller noticing.
"""

import logging
import threading
import time
from enum import Enum
from typing import NamedTuple, Optional

from config import MODBUS_CONFIG
from protocols.modbus.connection import ModbusConnection
from protocols.modbus.framer import format_adu, stamp_transaction_id


logger = logging.getLogger(__name__)


class ExchangeOutcome(Enum):
    """How an exchange ended."""
    COMPLETED = "COMPLETED"            # Response received
    RECOVERED = "RECOVERED"            # Response received after a reconnect
    INVALID_BUFFER = "INVALID_BUFFER"  # Empty request or response buffer
    NO_CONNECTION = "NO_CONNECTION"    # Down and reconnect failed
    GUARD_TIMEOUT = "GUARD_TIMEOUT"    # Prior exchange still running
    FAILED = "FAILED"                  # Nothing received, retries exhausted


class ExchangeResult(NamedTuple):
    bytes_received: int
    outcome: ExchangeOutcome


class Transceiver:
    """
    Single-flight request/response engine.

    Only one exchange is on the wire at a time; other callers wait up to
    guard_timeout_s for the guard and then give up. The transaction ID is
    only touched while the guard is held.
    """

    def __init__(self, connection: ModbusConnection,
                 guard_timeout_s: float = MODBUS_CONFIG["guard_timeout_s"],
                 response_delay_s: float = MODBUS_CONFIG["response_delay_s"],
                 max_send_attempts: int = MODBUS_CONFIG["max_send_attempts"],
                 error_log_threshold: int = MODBUS_CONFIG["error_log_threshold"],
                 logging_enabled: bool = False):
        self.connection = connection
        self.guard_timeout_s = guard_timeout_s
        self.response_delay_s = response_delay_s
        self.max_send_attempts = max_send_attempts
        self.error_log_threshold = error_log_threshold
        self.logging_enabled = logging_enabled

        self._guard = threading.Lock()
        self.transaction_id = 1

        # Cumulative for the client lifetime
        self.stats = {
            'tx_bytes': 0,
            'rx_bytes': 0,
            'errors': 0,
            'retries': 0,
            'reconnects': 0,
        }

    @property
    def busy(self) -> bool:
        """True while an exchange holds the guard."""
        return self._guard.locked()

    def reset_transaction_id(self):
        """Restart transaction numbering (after a fresh connect)."""
        self.transaction_id = 1

    def exchange(self, request: Optional[bytes], response: Optional[bytearray]) -> int:
        """
        Send request and receive the reply into response.

        Returns:
            Number of bytes received, 0 if no exchange succeeded
        """
        return self.transact(request, response).bytes_received

    def transact(self, request: Optional[bytes], response: Optional[bytearray]) -> ExchangeResult:
        """Same as exchange(), also reporting why a 0-byte result happened."""
        if not request:
            logger.error("Empty command passed to Transceiver.exchange")
            return ExchangeResult(0, ExchangeOutcome.INVALID_BUFFER)

        if len(request) < 2:
            logger.error(f"Command too short to carry a transaction ID ({len(request)} bytes)")
            return ExchangeResult(0, ExchangeOutcome.INVALID_BUFFER)

        if response is None or len(response) == 0:
            logger.error("Empty receive buffer passed to Transceiver.exchange")
            return ExchangeResult(0, ExchangeOutcome.INVALID_BUFFER)

        if not self._guard.acquire(timeout=self.guard_timeout_s):
            self._count_error()
            logger.warning("Timeout waiting for command to complete")
            return ExchangeResult(0, ExchangeOutcome.GUARD_TIMEOUT)

        try:
            # The socket is only replaced while the guard is held
            if not self.connection.connected:
                if not self.connection.reconnect():
                    self._count_error()
                    return ExchangeResult(0, ExchangeOutcome.NO_CONNECTION)
                self.stats['reconnects'] += 1

            frame = bytearray(request)
            stamp_transaction_id(frame, self.transaction_id)
            self.transaction_id = (self.transaction_id + 1) & 0xFFFF

            if self.logging_enabled:
                logger.debug(f"tx> {format_adu(frame)}")

            count, reconnect_required = self._send_with_retries(frame, response)
            if not reconnect_required:
                outcome = ExchangeOutcome.COMPLETED if count > 0 else ExchangeOutcome.FAILED
                return ExchangeResult(count, outcome)

            count = self._final_attempt(frame, response)
            outcome = ExchangeOutcome.RECOVERED if count > 0 else ExchangeOutcome.FAILED
            return ExchangeResult(count, outcome)
        finally:
            self._guard.release()

    def _send_with_retries(self, frame: bytearray, response: bytearray):
        """
        Returns:
            (bytes_received, reconnect_required)
        """
        try:
            for attempt in range(self.max_send_attempts):
                if attempt > 0:
                    self.stats['retries'] += 1

                count = self._send_receive(frame, response)
                if count > 0:
                    return count, False

                if not self.connection.connected or attempt >= self.max_send_attempts - 1:
                    self._count_error()
                    logger.warning("Communication with controller lost, resynchronizing")
                    self.connection.close()
                    return 0, True

        except OSError as e:
            logger.warning(f"{type(e).__name__}: {e} during exchange with "
                           f"{self.connection.host}:{self.connection.port}")
            self.connection.close()
            self._count_error()
            return 0, True

        return 0, False

    def _final_attempt(self, frame: bytearray, response: bytearray) -> int:
        """Reconnect and try the same frame exactly once more."""
        if not self.connection.reconnect():
            logger.error(f"Lost communication with controller: {self.connection.last_error}")
            return 0

        self.stats['reconnects'] += 1
        try:
            return self._send_receive(frame, response)
        except OSError as e:
            logger.error(f"Lost communication with controller: {e}")
            self.connection.close()
            return 0

    def _send_receive(self, frame: bytearray, response: bytearray) -> int:
        self.connection.send(frame)
        self.stats['tx_bytes'] += len(frame)

        if self.response_delay_s > 0:
            time.sleep(self.response_delay_s)

        count = self.connection.receive_into(response)
        if count > 0:
            self.stats['rx_bytes'] += count
            if self.logging_enabled:
                logger.debug(f"rx< {format_adu(response, count)}")
        return count

    def _count_error(self):
        self.stats['errors'] += 1
        if self.stats['errors'] % self.error_log_threshold == 0:
            logger.warning(f"Modbus error count reached {self.stats['errors']} "
                           f"for {self.connection.host}:{self.connection.port}")
