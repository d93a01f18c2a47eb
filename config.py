"""
MODBUS/TCP Master Configuration
Defaults for the client protocol engine, overridable from the environment
"""

import os
import logging
from typing import Optional

# ==================== MODBUS TCP ====================

MODBUS_TCP_PORT = 502  # IANA well-known port

MODBUS_CONFIG = {
    "host": os.getenv("MODBUS_HOST", "127.0.0.1"),
    "port": int(os.getenv("MODBUS_PORT", MODBUS_TCP_PORT)),
    "device_address": int(os.getenv("MODBUS_DEVICE_ADDRESS", 0)),
    "logging_enabled": os.getenv("MODBUS_LOGGING", "0").lower() in ("1", "true", "yes"),

    # Connection manager
    "connect_timeout_s": 2.0,
    "receive_timeout_s": 0.1,             # Initial connection
    "reconnect_receive_timeout_s": 0.25,  # Connection re-opened after a transport failure
    "connect_attempts": 3,
    "connect_backoff_s": 0.1,             # Doubles per failed attempt
    "connect_backoff_max_s": 1.0,

    # Transceiver
    "guard_timeout_s": 0.5,    # Max wait for a prior exchange to finish
    "response_delay_s": 0.025, # Latency floor between send and receive
    "max_send_attempts": 4,
    "error_log_threshold": 5,  # Warn each time the error count crosses a multiple

    # Operations
    "receive_buffer_size": 16,
    "read_input_function_code": 0x01,  # Observed on deployed controllers; 0x04 is the standard code
}

# ==================== LOGGING CONFIGURATION ====================

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def configure_logging(level: Optional[str] = None):
    """Apply LOGGING_CONFIG to the root logger."""
    logging.basicConfig(
        level=getattr(logging, (level or LOGGING_CONFIG["level"]).upper(), logging.INFO),
        format=LOGGING_CONFIG["format"],
    )
