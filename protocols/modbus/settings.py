"""
Modbus Client Settings
======================

Validated client configuration. Defaults come from MODBUS_CONFIG in the
root config module, which itself honours MODBUS_* environment variables.
"""

from pydantic import BaseModel, Field

from config import MODBUS_CONFIG


class ModbusSettings(BaseModel):
    """Connection, retry and framing parameters for ModbusClient."""

    host: str = MODBUS_CONFIG["host"]
    port: int = Field(MODBUS_CONFIG["port"], ge=1, le=65535)
    device_address: int = Field(MODBUS_CONFIG["device_address"], ge=0, le=255)
    logging_enabled: bool = MODBUS_CONFIG["logging_enabled"]

    connect_timeout_s: float = Field(MODBUS_CONFIG["connect_timeout_s"], gt=0)
    receive_timeout_s: float = Field(MODBUS_CONFIG["receive_timeout_s"], gt=0)
    reconnect_receive_timeout_s: float = Field(MODBUS_CONFIG["reconnect_receive_timeout_s"], gt=0)
    connect_attempts: int = Field(MODBUS_CONFIG["connect_attempts"], ge=1)
    connect_backoff_s: float = Field(MODBUS_CONFIG["connect_backoff_s"], ge=0)
    connect_backoff_max_s: float = Field(MODBUS_CONFIG["connect_backoff_max_s"], ge=0)

    guard_timeout_s: float = Field(MODBUS_CONFIG["guard_timeout_s"], gt=0)
    response_delay_s: float = Field(MODBUS_CONFIG["response_delay_s"], ge=0)
    max_send_attempts: int = Field(MODBUS_CONFIG["max_send_attempts"], ge=1)
    error_log_threshold: int = Field(MODBUS_CONFIG["error_log_threshold"], ge=1)

    # Largest valid reply is a register read: 7 + 1 + 1 + 2 bytes
    receive_buffer_size: int = Field(MODBUS_CONFIG["receive_buffer_size"], ge=11)
    read_input_function_code: int = Field(MODBUS_CONFIG["read_input_function_code"], ge=1, le=0x7F)
