"""
Modbus Protocol Implementation
===============================

MODBUS/TCP master for single register and coil access.

This package provides:
    - ModbusClient: Public read/write operations returning status codes
    - Transceiver: Single-flight exchange engine with retry and reconnect
    - ModbusConnection: TCP connection lifecycle
    - Framer: MBAP request encoding and response decoding
    - MockModbusServer: Scripted endpoint for tests

Usage:
    from protocols.modbus import ModbusClient, ModbusSettings, ModbusStatus

    client = ModbusClient(ModbusSettings(device_address=1))
    if client.initialize("192.168.1.50"):
        status, value = client.read_holding_register(100)
        if status == ModbusStatus.NO_ERROR:
            print(value)
    client.shutdown()
"""

from protocols.modbus.client import ModbusClient, ReadResult, COIL_ON, COIL_OFF
from protocols.modbus.connection import ModbusConnection, ConnectionState
from protocols.modbus.framer import (
    FunctionCode,
    ResponseADU,
    encode_request,
    decode_response,
    is_exception,
    format_adu,
)
from protocols.modbus.settings import ModbusSettings
from protocols.modbus.status import (
    ModbusStatus,
    ModbusExceptionCode,
    describe_status,
    is_device_exception,
)
from protocols.modbus.transceiver import Transceiver, ExchangeOutcome, ExchangeResult

__all__ = [
    # Client
    'ModbusClient',
    'ReadResult',
    'COIL_ON',
    'COIL_OFF',
    'ModbusSettings',

    # Engine
    'Transceiver',
    'ExchangeOutcome',
    'ExchangeResult',
    'ModbusConnection',
    'ConnectionState',

    # Framing
    'FunctionCode',
    'ResponseADU',
    'encode_request',
    'decode_response',
    'is_exception',
    'format_adu',

    # Status
    'ModbusStatus',
    'ModbusExceptionCode',
    'describe_status',
    'is_device_exception',
]
