"""
Modbus Operation Status
=======================

Every client operation returns an integer status:

    0         NO_ERROR
    negative  Communication-layer failure detected by the master
    positive  Exception code reported by the device, passed through verbatim

The master never acts on device exception codes; the names below only
make them readable in logs and the CLI.
"""

from enum import IntEnum


class ModbusStatus(IntEnum):
    """Master-side status codes."""
    NO_ERROR = 0
    NO_CONNECTION = -1        # Not connected, or reconnect failed
    TRUNCATED_RESPONSE = -2   # Fewer than header + function code bytes
    INCOMPLETE_RESPONSE = -3  # Header echoed, value payload missing or short
    EXCHANGE_TIMEOUT = -4     # Timed out waiting for a prior exchange


class ModbusExceptionCode(IntEnum):
    """Standard Modbus exception codes."""
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SLAVE_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SLAVE_DEVICE_BUSY = 0x06
    NEGATIVE_ACKNOWLEDGE = 0x07
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_FAILED_TO_RESPOND = 0x0B


def is_device_exception(status: int) -> bool:
    return status > 0


def describe_status(status: int) -> str:
    """
    Human-readable name for any status value.

    Examples:
        describe_status(0)  -> 'NO_ERROR'
        describe_status(-2) -> 'TRUNCATED_RESPONSE'
        describe_status(2)  -> 'device exception 0x02 (ILLEGAL_DATA_ADDRESS)'
        describe_status(15) -> 'device exception 0x0F'
    """
    if status <= 0:
        try:
            return ModbusStatus(status).name
        except ValueError:
            return f"unknown status {status}"

    try:
        name = ModbusExceptionCode(status).name
        return f"device exception 0x{status:02X} ({name})"
    except ValueError:
        return f"device exception 0x{status:02X}"
