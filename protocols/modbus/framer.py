"""
Modbus TCP Framer
=================

Pure encode/decode helpers for the MODBUS TCP Application Data Unit (ADU).

Request ADU (12 bytes, big-endian):
    Transaction ID:  2 bytes (stamped per exchange)
    Protocol ID:     2 bytes (always 0x0000)
    Length:          2 bytes (always 6 for single register/coil requests)
    Unit ID:         1 byte
    Function Code:   1 byte
    Field A:         2 bytes (register/coil address)
    Field B:         2 bytes (value or count)

Response ADU (>= 8 bytes):
    MBAP header (7 bytes) + function code, then either the function payload
    or, with bit 0x80 of the function code set, a 1-byte exception code.

Nothing here performs I/O or decides whether a response is long enough;
the minimum useful length depends on the function code and is the
caller's business.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union


class FunctionCode(IntEnum):
    """Modbus function codes used by the master."""
    READ_COIL = 0x01
    READ_HOLDING_REGISTER = 0x03
    READ_INPUT_REGISTER = 0x04
    WRITE_COIL = 0x05
    WRITE_HOLDING_REGISTER = 0x06


PROTOCOL_ID = 0x0000
MBAP_HEADER_LENGTH = 7
REQUEST_LENGTH = 12
REQUEST_PDU_LENGTH = 6     # Unit ID + function code + two 16-bit fields
MIN_RESPONSE_LENGTH = 8    # MBAP header + function code
EXCEPTION_FLAG = 0x80

_REQUEST = struct.Struct('>HHHBBHH')

Buffer = Union[bytes, bytearray, memoryview]


def encode_request(transaction_id: int, unit_address: int, function_code: int,
                   field_a: int, field_b: int) -> bytes:
    """
    Build a 12-byte request ADU.

    Every field is masked to its wire width, so the encoder never fails.

    Args:
        transaction_id: 16-bit transaction ID
        unit_address: Unit/device address (0-255)
        function_code: Modbus function code
        field_a: Register or coil address
        field_b: Value to write, or number of items to read

    Returns:
        Encoded request
    """
    return _REQUEST.pack(
        transaction_id & 0xFFFF,
        PROTOCOL_ID,
        REQUEST_PDU_LENGTH,
        unit_address & 0xFF,
        function_code & 0xFF,
        field_a & 0xFFFF,
        field_b & 0xFFFF,
    )


def stamp_transaction_id(frame: bytearray, transaction_id: int):
    """Overwrite the transaction ID of an encoded frame in place."""
    struct.pack_into('>H', frame, 0, transaction_id & 0xFFFF)


def is_exception(function_code: int) -> bool:
    """True if a response function code carries the exception flag."""
    return bool(function_code & EXCEPTION_FLAG)


@dataclass
class ResponseADU:
    """
    Decoded view of a received response.

    Header fields are None when the response was too short to carry them.
    Indexing and len() address the raw received bytes.
    """
    raw: bytes
    transaction_id: Optional[int] = None
    protocol_id: Optional[int] = None
    length: Optional[int] = None
    unit_address: Optional[int] = None
    function_code: Optional[int] = None

    @property
    def exception_flag(self) -> bool:
        return self.function_code is not None and is_exception(self.function_code)

    @property
    def exception_code(self) -> Optional[int]:
        """Device exception code, if flagged and present."""
        if self.exception_flag and len(self.raw) > MIN_RESPONSE_LENGTH:
            return self.raw[MIN_RESPONSE_LENGTH]
        return None

    @property
    def payload(self) -> bytes:
        return self.raw[MIN_RESPONSE_LENGTH:]

    def __getitem__(self, index):
        return self.raw[index]

    def __len__(self) -> int:
        return len(self.raw)


def _field(raw: bytes, offset: int, size: int) -> Optional[int]:
    if len(raw) < offset + size:
        return None
    return int.from_bytes(raw[offset:offset + size], 'big')


def decode_response(buffer: Buffer, bytes_read: Optional[int] = None) -> ResponseADU:
    """
    Decode the first bytes_read bytes of a response buffer.

    Args:
        buffer: Receive buffer
        bytes_read: Number of valid bytes (defaults to the whole buffer)

    Returns:
        ResponseADU with whatever header fields were received
    """
    if bytes_read is None:
        bytes_read = len(buffer)
    raw = bytes(buffer[:max(bytes_read, 0)])

    return ResponseADU(
        raw=raw,
        transaction_id=_field(raw, 0, 2),
        protocol_id=_field(raw, 2, 2),
        length=_field(raw, 4, 2),
        unit_address=_field(raw, 6, 1),
        function_code=_field(raw, 7, 1),
    )


def format_adu(buffer: Buffer, count: Optional[int] = None) -> str:
    """
    Render an ADU for the wire trace.

    Format: msg:[tttt] cnt:[llll] cmd:[uuff]  pp pp ...
    Frames shorter than a full header are dumped byte by byte.
    """
    if count is None:
        count = len(buffer)
    data = bytes(buffer[:max(count, 0)])

    if len(data) < MIN_RESPONSE_LENGTH:
        return ' '.join(f"{b:02x}" for b in data)

    text = (f"msg:[{data[0]:02x}{data[1]:02x}] "
            f"cnt:[{data[4]:02x}{data[5]:02x}] "
            f"cmd:[{data[6]:02x}{data[7]:02x}] ")
    for b in data[MIN_RESPONSE_LENGTH:]:
        text += f" {b:02x}"
    return text
