"""
Modbus TCP Client
=================

Master-side client for reading and writing single registers and coils on a
remote controller.

Features:
    - Connection management with bounded connect retries
    - Transparent reconnect-and-retry-once on transport failure
    - Single-flight exchanges safe to call from several threads
    - Read/write operations (FC01, FC03, FC05, FC06, input register read)
    - Status codes instead of exceptions (see protocols.modbus.status)

Every operation returns 0 on success, a negative ModbusStatus on a
communication failure, or the positive exception code the device reported.
"""

import ipaddress
import logging
from typing import NamedTuple, Optional, Union

from protocols.modbus.connection import ModbusConnection
from protocols.modbus.framer import (
    FunctionCode,
    MIN_RESPONSE_LENGTH,
    decode_response,
    encode_request,
    format_adu,
)
from protocols.modbus.settings import ModbusSettings
from protocols.modbus.status import ModbusStatus, describe_status
from protocols.modbus.transceiver import ExchangeOutcome, Transceiver


logger = logging.getLogger(__name__)

# Shortest responses that carry a value
READ_REGISTER_MIN_LENGTH = 11  # header + fc + byte count + 2 value bytes
READ_INPUT_MIN_LENGTH = 10     # header + fc + 2 value bytes
READ_COIL_MIN_LENGTH = 10      # header + fc + byte count + 1 value byte

COIL_ON = 0xFF
COIL_OFF = 0x00


class ReadResult(NamedTuple):
    """Status and decoded value of a read (value is None unless status is NO_ERROR)."""
    status: int
    value: Optional[int] = None


RemoteAddress = Union[int, str]


class ModbusClient:
    """
    Modbus TCP client for one controller.

    Usage:
        client = ModbusClient(ModbusSettings(device_address=1))
        if client.initialize("192.168.1.50"):
            status, value = client.read_holding_register(100)
        client.shutdown()
    """

    def __init__(self, settings: Optional[ModbusSettings] = None):
        """
        Initialize Modbus client.

        Args:
            settings: Connection and retry parameters (defaults from config.py)
        """
        self.settings = settings or ModbusSettings()
        self._device_address = self.settings.device_address

        self.connection = ModbusConnection(
            host=self.settings.host,
            port=self.settings.port,
            connect_timeout_s=self.settings.connect_timeout_s,
            receive_timeout_s=self.settings.receive_timeout_s,
            reconnect_receive_timeout_s=self.settings.reconnect_receive_timeout_s,
            connect_attempts=self.settings.connect_attempts,
            connect_backoff_s=self.settings.connect_backoff_s,
            connect_backoff_max_s=self.settings.connect_backoff_max_s,
        )
        self.transceiver = Transceiver(
            self.connection,
            guard_timeout_s=self.settings.guard_timeout_s,
            response_delay_s=self.settings.response_delay_s,
            max_send_attempts=self.settings.max_send_attempts,
            error_log_threshold=self.settings.error_log_threshold,
            logging_enabled=self.settings.logging_enabled,
        )

    # ----- properties -----

    @property
    def device_address(self) -> int:
        return self._device_address

    @device_address.setter
    def device_address(self, value: int):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Device address out of range (0-255): {value}")
        self._device_address = value

    @property
    def address(self) -> Optional[int]:
        """Controller IPv4 address as a host-order integer."""
        return self.connection.address

    @address.setter
    def address(self, value: RemoteAddress):
        self.connection.host = _to_host(value)

    @property
    def port(self) -> int:
        return self.connection.port

    @port.setter
    def port(self, value: int):
        self.connection.port = value

    @property
    def logging_enabled(self) -> bool:
        return self.transceiver.logging_enabled

    @logging_enabled.setter
    def logging_enabled(self, value: bool):
        self.transceiver.logging_enabled = value

    @property
    def connected(self) -> bool:
        return self.connection.connected

    @property
    def stats(self) -> dict:
        return {**self.connection.stats, **self.transceiver.stats}

    # ----- startup and shutdown -----

    def initialize(self, remote_address: Optional[RemoteAddress] = None,
                   device_address: Optional[int] = None,
                   port: Optional[int] = None) -> bool:
        """
        Connect to the controller.

        Args:
            remote_address: IPv4 address as host-order int (0x7F000001) or string
            device_address: Unit address copied into every request
            port: TCP port (default 502)

        Returns:
            True if connected
        """
        if remote_address is not None:
            self.address = remote_address
        if device_address is not None:
            self.device_address = device_address
        if port is not None:
            self.port = port

        if not self.connection.connect():
            return False

        self.transceiver.reset_transaction_id()
        return True

    def shutdown(self):
        """Close the connection. Safe to call more than once."""
        self.connection.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    def exchange(self, request: bytes, response: bytearray) -> int:
        """
        Send a raw request and receive the raw reply.

        The first two bytes of the transmitted frame are replaced by the
        transaction ID; the caller's request buffer is left untouched.

        Returns:
            Number of bytes received into response (0 on failure)
        """
        return self.transceiver.exchange(request, response)

    # ----- operations -----

    def write_holding_register(self, address: int, value: int) -> int:
        """
        Write single holding register (FC06).

        Args:
            address: Register address
            value: 16-bit value to write

        Returns:
            Status (0 on success)
        """
        status, _ = self._execute("WRITEREG", FunctionCode.WRITE_HOLDING_REGISTER,
                                  address, value, MIN_RESPONSE_LENGTH)
        return status

    def read_holding_register(self, address: int) -> ReadResult:
        """
        Read single holding register (FC03).

        Returns:
            ReadResult(status, value)
        """
        status, adu = self._execute("READREG", FunctionCode.READ_HOLDING_REGISTER,
                                    address, 1, READ_REGISTER_MIN_LENGTH)
        if status != ModbusStatus.NO_ERROR:
            return ReadResult(status)
        return ReadResult(status, (adu[9] << 8) | adu[10])

    def read_input_register(self, address: int) -> ReadResult:
        """
        Read single input register.

        Sent with settings.read_input_function_code, which defaults to the
        coil-read code 0x01 that deployed controllers answer to. The reply
        carries the value in the two bytes after the function code.

        Returns:
            ReadResult(status, value)
        """
        status, adu = self._execute("READINPUT", self.settings.read_input_function_code,
                                    address, 1, READ_INPUT_MIN_LENGTH)
        if status != ModbusStatus.NO_ERROR:
            return ReadResult(status)
        return ReadResult(status, (adu[8] << 8) | adu[9])

    def write_coil(self, address: int, value: int) -> int:
        """
        Write single coil (FC05).

        Args:
            address: Coil address
            value: COIL_ON (0xFF) or COIL_OFF (0x00)

        Returns:
            Status (0 on success)
        """
        status, _ = self._execute("WRITEBIT", FunctionCode.WRITE_COIL,
                                  address, (value & 0xFF) << 8, MIN_RESPONSE_LENGTH)
        return status

    def read_coil(self, address: int) -> ReadResult:
        """
        Read single coil (FC01).

        Returns:
            ReadResult(status, value) with value 0x00 or 0xFF
        """
        status, adu = self._execute("READBIT", FunctionCode.READ_COIL,
                                    address, 1, READ_COIL_MIN_LENGTH)
        if status != ModbusStatus.NO_ERROR:
            return ReadResult(status)
        return ReadResult(status, adu[9])

    def _execute(self, name: str, function_code: int, address: int,
                 field_b: int, min_length: int):
        """
        Run one exchange and classify the response.

        Returns:
            (status, ResponseADU or None)
        """
        if not self.connected:
            return ModbusStatus.NO_CONNECTION, None

        if not 0 <= address <= 0xFFFF:
            logger.warning(f"{name} address {address} exceeds 16 bits, "
                           f"sending {address & 0xFFFF}")

        request = encode_request(0, self._device_address, function_code, address, field_b)
        response = bytearray(self.settings.receive_buffer_size)
        count, outcome = self.transceiver.transact(request, response)

        if outcome == ExchangeOutcome.NO_CONNECTION:
            return ModbusStatus.NO_CONNECTION, None
        if outcome == ExchangeOutcome.GUARD_TIMEOUT:
            return ModbusStatus.EXCHANGE_TIMEOUT, None

        adu = decode_response(response, count)

        if count < MIN_RESPONSE_LENGTH:
            logger.warning(f"Truncated MODBUS response to {name}. "
                           f"reg addr = {address}, {count} bytes rcvd.")
            logger.debug(format_adu(response, count))
            return ModbusStatus.TRUNCATED_RESPONSE, None

        if adu.exception_flag:
            code = adu.exception_code
            # Flag set but byte 8 never arrived: no code to report, so not a device status
            if code is None:
                logger.warning(f"MODBUS exception flag without code in {name} response, "
                               f"reg addr = {address}")
                return ModbusStatus.INCOMPLETE_RESPONSE, None
            logger.warning(f"MODBUS error 0x{code:X} ({describe_status(code)}) "
                           f"in {name}, reg addr = {address}")
            return code, None

        if count < min_length:
            logger.warning(f"Short MODBUS response to {name}. reg addr = {address}")
            logger.debug(format_adu(response, count))
            return ModbusStatus.INCOMPLETE_RESPONSE, None

        return ModbusStatus.NO_ERROR, adu

    def __repr__(self):
        return (f"ModbusClient({self.connection.host}:{self.connection.port}, "
                f"unit={self._device_address}, connected={self.connected})")


def _to_host(value: RemoteAddress) -> str:
    """Host-order integer or string -> dotted/hostname string."""
    if isinstance(value, int):
        return str(ipaddress.IPv4Address(value & 0xFFFFFFFF))
    return value
