"""
Test Suite for Modbus TCP Master Protocol Engine
================================================

Tests validate:
    - Request encoding and response decoding
    - Status taxonomy and settings validation
    - Connection lifecycle against a real loopback socket
    - Transceiver retry, reconnect and single-flight rules
"""

import socket
import sys
import threading
import unittest
from pathlib import Path

from pydantic import ValidationError

# Add parent directories to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from protocols.modbus.connection import ModbusConnection, ConnectionState
from protocols.modbus.framer import (
    FunctionCode, decode_response, encode_request, format_adu,
    is_exception, stamp_transaction_id,
)
from protocols.modbus.settings import ModbusSettings
from protocols.modbus.status import ModbusStatus, describe_status, is_device_exception
from protocols.modbus.transceiver import ExchangeOutcome, Transceiver


PEER_CLOSED = object()


class FakeConnection:
    """
    Stand-in for ModbusConnection.

    replies: one entry per receive: bytes to deliver, 0 for a timeout,
    PEER_CLOSED for an orderly close. Exhausted replies read as timeouts.
    send_errors: one entry per send: None, or an exception to raise.
    """

    def __init__(self, replies=(), send_errors=(), connected=True, reconnect_ok=True):
        self.host = "fake"
        self.port = 502
        self.replies = list(replies)
        self.send_errors = list(send_errors)
        self.reconnect_ok = reconnect_ok
        self.last_error = None
        self.sent = []
        self.closes = 0
        self.reconnects = 0
        self._connected = connected

    @property
    def connected(self):
        return self._connected

    def send(self, data):
        error = self.send_errors.pop(0) if self.send_errors else None
        if error is not None:
            raise error
        self.sent.append(bytes(data))

    def receive_into(self, buffer):
        reply = self.replies.pop(0) if self.replies else 0
        if reply is PEER_CLOSED:
            self._connected = False
            return 0
        if reply == 0:
            return 0
        buffer[:len(reply)] = reply
        return len(reply)

    def close(self):
        self.closes += 1
        self._connected = False

    def reconnect(self):
        self.reconnects += 1
        self._connected = self.reconnect_ok
        if not self.reconnect_ok:
            self.last_error = "connection refused"
        return self.reconnect_ok


def _free_port():
    """Port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


REQUEST = encode_request(0, 22, FunctionCode.WRITE_HOLDING_REGISTER, 5, 100)
REPLY = bytes([0, 1, 0, 0, 0, 6, 22, 0x06, 0])


class TestModbusFramer(unittest.TestCase):
    """Test request encoding and response decoding"""

    def test_request_layout(self):
        """Test exact 12-byte request layout"""
        frame = encode_request(0x1234, 22, FunctionCode.WRITE_HOLDING_REGISTER, 5, 100)
        self.assertEqual(frame, bytes([0x12, 0x34, 0, 0, 0, 6, 22, 0x06, 0, 5, 0, 100]))

    def test_request_fields_masked(self):
        """Test encoder masks out-of-range fields instead of failing"""
        frame = encode_request(0x10001, 0x1FF, 0x106, 0x12345, -1)
        self.assertEqual(len(frame), 12)
        self.assertEqual(frame[0:2], b'\x00\x01')
        self.assertEqual(frame[6], 0xFF)
        self.assertEqual(frame[7], 0x06)
        self.assertEqual(frame[8:10], b'\x23\x45')
        self.assertEqual(frame[10:12], b'\xff\xff')

    def test_round_trip_header(self):
        """Test decode(encode()) recovers transaction, unit and function"""
        for tid, unit, fc in [(1, 0, 0x01), (0x8000, 25, 0x03), (0xFFFF, 255, 0x06)]:
            adu = decode_response(encode_request(tid, unit, fc, 7, 9))
            self.assertEqual(adu.transaction_id, tid)
            self.assertEqual(adu.unit_address, unit)
            self.assertEqual(adu.function_code, fc)
            self.assertEqual(adu.protocol_id, 0)
            self.assertEqual(adu.length, 6)

    def test_decode_truncated(self):
        """Test decoding a header-only fragment"""
        adu = decode_response(bytes([0, 1, 0, 0, 0, 6]), 6)
        self.assertEqual(adu.length, 6)
        self.assertIsNone(adu.unit_address)
        self.assertIsNone(adu.function_code)
        self.assertFalse(adu.exception_flag)
        self.assertEqual(len(adu), 6)

    def test_decode_exception(self):
        """Test exception flag and code"""
        adu = decode_response(bytes([0, 2, 0, 0, 0, 3, 22, 0x86, 15]))
        self.assertTrue(adu.exception_flag)
        self.assertEqual(adu.exception_code, 15)
        self.assertEqual(adu.payload, b'\x0f')

    def test_decode_exception_without_code(self):
        adu = decode_response(bytes([0, 2, 0, 0, 0, 2, 22, 0x86]))
        self.assertTrue(adu.exception_flag)
        self.assertIsNone(adu.exception_code)

    def test_decode_honours_bytes_read(self):
        """Test only the received part of a larger buffer is decoded"""
        buffer = bytearray(16)
        buffer[:11] = bytes([0, 2, 0, 0, 0, 5, 25, 0x03, 2, 0x10, 0x20])
        adu = decode_response(buffer, 11)
        self.assertEqual(len(adu), 11)
        self.assertEqual(adu[9], 0x10)
        self.assertEqual(adu[10], 0x20)
        self.assertEqual(adu.payload, bytes([2, 0x10, 0x20]))

    def test_is_exception(self):
        self.assertTrue(is_exception(0x83))
        self.assertFalse(is_exception(0x03))

    def test_stamp_transaction_id(self):
        frame = bytearray(REQUEST)
        stamp_transaction_id(frame, 0xABCD)
        self.assertEqual(frame[0:2], b'\xab\xcd')
        self.assertEqual(frame[2:], REQUEST[2:])

    def test_format_adu(self):
        """Test wire trace formatting"""
        frame = encode_request(1, 22, FunctionCode.WRITE_HOLDING_REGISTER, 5, 100)
        self.assertEqual(format_adu(frame), "msg:[0001] cnt:[0006] cmd:[1606]  00 05 00 64")
        self.assertEqual(format_adu(bytes([0, 1, 2, 0xFF])), "00 01 02 ff")
        self.assertEqual(format_adu(bytearray(16), 0), "")


class TestModbusStatus(unittest.TestCase):
    """Test status taxonomy"""

    def test_status_values(self):
        self.assertEqual(ModbusStatus.NO_ERROR, 0)
        self.assertEqual(ModbusStatus.NO_CONNECTION, -1)
        self.assertEqual(ModbusStatus.TRUNCATED_RESPONSE, -2)
        self.assertEqual(ModbusStatus.INCOMPLETE_RESPONSE, -3)
        self.assertLess(ModbusStatus.EXCHANGE_TIMEOUT, 0)

    def test_describe_status(self):
        self.assertEqual(describe_status(0), "NO_ERROR")
        self.assertEqual(describe_status(-2), "TRUNCATED_RESPONSE")
        self.assertEqual(describe_status(2), "device exception 0x02 (ILLEGAL_DATA_ADDRESS)")
        self.assertEqual(describe_status(15), "device exception 0x0F")
        self.assertEqual(describe_status(-99), "unknown status -99")

    def test_device_exception(self):
        self.assertTrue(is_device_exception(15))
        self.assertFalse(is_device_exception(ModbusStatus.NO_ERROR))
        self.assertFalse(is_device_exception(ModbusStatus.TRUNCATED_RESPONSE))


class TestModbusSettings(unittest.TestCase):
    """Test settings validation"""

    def test_defaults(self):
        settings = ModbusSettings()
        self.assertEqual(settings.max_send_attempts, 4)
        self.assertEqual(settings.receive_buffer_size, 16)
        self.assertEqual(settings.read_input_function_code, 0x01)

    def test_invalid_values(self):
        with self.assertRaises(ValidationError):
            ModbusSettings(port=0)
        with self.assertRaises(ValidationError):
            ModbusSettings(device_address=256)
        with self.assertRaises(ValidationError):
            ModbusSettings(receive_buffer_size=8)
        with self.assertRaises(ValidationError):
            ModbusSettings(max_send_attempts=0)


class TestModbusConnection(unittest.TestCase):
    """Test connection lifecycle against a loopback listener"""

    def setUp(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(('127.0.0.1', 0))
        self.listener.listen(4)
        self.port = self.listener.getsockname()[1]
        self.conn = ModbusConnection('127.0.0.1', self.port, connect_attempts=2,
                                     connect_backoff_s=0.01)

    def tearDown(self):
        self.conn.shutdown()
        self.listener.close()

    def test_initial_state(self):
        self.assertEqual(self.conn.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.conn.connected)
        self.assertEqual(self.conn.address, 0x7F000001)

    def test_connect_sets_socket_options(self):
        """Test no-delay and short receive timeout on connect"""
        self.assertTrue(self.conn.connect())
        self.assertTrue(self.conn.connected)
        self.assertNotEqual(self.conn.socket.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY), 0)
        self.assertAlmostEqual(self.conn.socket.gettimeout(), 0.1)
        self.assertEqual(self.conn.stats['connections'], 1)

    def test_reconnect_uses_longer_timeout(self):
        self.assertTrue(self.conn.connect())
        self.assertTrue(self.conn.reconnect())
        self.assertAlmostEqual(self.conn.socket.gettimeout(), 0.25)
        self.assertEqual(self.conn.stats['connections'], 2)
        self.assertEqual(self.conn.stats['disconnections'], 1)

    def test_connect_failure_does_not_raise(self):
        """Test refused connection reports False after bounded retries"""
        conn = ModbusConnection('127.0.0.1', _free_port(), connect_attempts=2,
                                connect_backoff_s=0.01)
        self.assertFalse(conn.connect())
        self.assertFalse(conn.connected)
        self.assertEqual(conn.stats['failed_connects'], 2)
        self.assertIsNotNone(conn.last_error)
        self.assertFalse(conn.reconnect())

    def test_connect_without_address(self):
        conn = ModbusConnection(None)
        self.assertFalse(conn.connect())
        self.assertFalse(conn.reconnect())

    def test_shutdown_idempotent(self):
        """Test shutdown when never connected and repeatedly"""
        self.conn.shutdown()
        self.assertTrue(self.conn.connect())
        self.conn.shutdown()
        self.conn.shutdown()
        self.assertFalse(self.conn.connected)
        self.assertEqual(self.conn.stats['disconnections'], 1)

    def test_receive_timeout_reads_nothing(self):
        self.assertTrue(self.conn.connect())
        self.assertEqual(self.conn.receive_into(bytearray(16)), 0)
        self.assertTrue(self.conn.connected)

    def test_peer_close_marks_disconnected(self):
        """Test orderly close by controller"""
        self.assertTrue(self.conn.connect())
        peer, _ = self.listener.accept()
        peer.close()
        self.assertEqual(self.conn.receive_into(bytearray(16)), 0)
        self.assertEqual(self.conn.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.conn.connected)

    def test_send_and_receive(self):
        self.assertTrue(self.conn.connect())
        peer, _ = self.listener.accept()
        try:
            self.conn.send(REQUEST)
            self.assertEqual(peer.recv(64), REQUEST)
            peer.sendall(REPLY)
            buffer = bytearray(16)
            self.assertEqual(self.conn.receive_into(buffer), len(REPLY))
            self.assertEqual(bytes(buffer[:len(REPLY)]), REPLY)
        finally:
            peer.close()


class TestTransceiver(unittest.TestCase):
    """Test exchange engine with a scripted connection"""

    def make(self, **kwargs):
        conn = FakeConnection(**kwargs)
        return conn, Transceiver(conn, response_delay_s=0, guard_timeout_s=0.05)

    def test_invalid_buffers(self):
        """Test empty request/response are rejected without I/O"""
        conn, engine = self.make(replies=[REPLY])
        self.assertEqual(engine.transact(b'', bytearray(16)).outcome, ExchangeOutcome.INVALID_BUFFER)
        self.assertEqual(engine.exchange(None, bytearray(16)), 0)
        self.assertEqual(engine.transact(b'\x01', bytearray(16)).outcome, ExchangeOutcome.INVALID_BUFFER)
        self.assertEqual(engine.exchange(REQUEST, bytearray()), 0)
        self.assertEqual(engine.exchange(REQUEST, None), 0)
        self.assertEqual(conn.sent, [])
        self.assertEqual(engine.transaction_id, 1)

    def test_single_exchange(self):
        """Test one send, one receive, statistics updated"""
        conn, engine = self.make(replies=[REPLY])
        response = bytearray(16)
        result = engine.transact(REQUEST, response)
        self.assertEqual(result.bytes_received, len(REPLY))
        self.assertEqual(result.outcome, ExchangeOutcome.COMPLETED)
        self.assertEqual(bytes(response[:len(REPLY)]), REPLY)
        self.assertEqual(len(conn.sent), 1)
        self.assertEqual(engine.stats['tx_bytes'], 12)
        self.assertEqual(engine.stats['rx_bytes'], len(REPLY))
        self.assertEqual(engine.stats['errors'], 0)

    def test_transaction_ids_increment(self):
        """Test stamped IDs are consecutive and caller buffer untouched"""
        conn, engine = self.make(replies=[REPLY] * 3)
        request = bytearray(REQUEST)
        for _ in range(3):
            engine.exchange(request, bytearray(16))
        self.assertEqual([int.from_bytes(f[0:2], 'big') for f in conn.sent], [1, 2, 3])
        self.assertEqual(bytes(request), REQUEST)

    def test_transaction_id_wraps(self):
        conn, engine = self.make(replies=[REPLY] * 2)
        engine.transaction_id = 0xFFFF
        engine.exchange(REQUEST, bytearray(16))
        engine.exchange(REQUEST, bytearray(16))
        self.assertEqual([f[0:2] for f in conn.sent], [b'\xff\xff', b'\x00\x00'])

    def test_retry_on_empty_read(self):
        """Test resend after timeouts, no reconnect needed"""
        conn, engine = self.make(replies=[0, 0, REPLY])
        self.assertEqual(engine.exchange(REQUEST, bytearray(16)), len(REPLY))
        self.assertEqual(len(conn.sent), 3)
        self.assertEqual(conn.reconnects, 0)
        self.assertEqual(engine.stats['retries'], 2)

    def test_retries_exhausted_then_one_more(self):
        """Test 4 attempts, reconnect, exactly one final attempt"""
        conn, engine = self.make(replies=[0, 0, 0, 0, 0])
        result = engine.transact(REQUEST, bytearray(16))
        self.assertEqual(result, (0, ExchangeOutcome.FAILED))
        self.assertEqual(len(conn.sent), 5)
        self.assertEqual(len(set(conn.sent)), 1)  # Same frame, same transaction ID
        self.assertEqual(conn.closes, 1)
        self.assertEqual(conn.reconnects, 1)
        self.assertEqual(engine.stats['errors'], 1)

    def test_recovered_after_reconnect(self):
        conn, engine = self.make(replies=[0, 0, 0, 0, REPLY])
        result = engine.transact(REQUEST, bytearray(16))
        self.assertEqual(result, (len(REPLY), ExchangeOutcome.RECOVERED))
        self.assertEqual(engine.stats['reconnects'], 1)

    def test_peer_close_skips_remaining_retries(self):
        """Test a closed socket goes straight to reconnect"""
        conn, engine = self.make(replies=[PEER_CLOSED, REPLY])
        self.assertEqual(engine.exchange(REQUEST, bytearray(16)), len(REPLY))
        self.assertEqual(len(conn.sent), 2)
        self.assertEqual(conn.reconnects, 1)

    def test_socket_error_triggers_reconnect(self):
        conn, engine = self.make(replies=[REPLY], send_errors=[BrokenPipeError("broken pipe")])
        result = engine.transact(REQUEST, bytearray(16))
        self.assertEqual(result.outcome, ExchangeOutcome.RECOVERED)
        self.assertEqual(conn.closes, 1)
        self.assertEqual(engine.stats['errors'], 1)

    def test_socket_error_on_final_attempt(self):
        conn, engine = self.make(send_errors=[ConnectionResetError(), ConnectionResetError()])
        self.assertEqual(engine.transact(REQUEST, bytearray(16)), (0, ExchangeOutcome.FAILED))
        self.assertFalse(conn.connected)

    def test_reconnect_failure_is_final(self):
        conn, engine = self.make(reconnect_ok=False)
        self.assertEqual(engine.transact(REQUEST, bytearray(16)), (0, ExchangeOutcome.FAILED))
        self.assertEqual(len(conn.sent), 4)
        self.assertFalse(engine.busy)

    def test_not_connected_reconnect_fails(self):
        """Test a down connection gets one reconnect, then NO_CONNECTION"""
        conn, engine = self.make(connected=False, reconnect_ok=False)
        self.assertEqual(engine.transact(REQUEST, bytearray(16)), (0, ExchangeOutcome.NO_CONNECTION))
        self.assertEqual(conn.reconnects, 1)
        self.assertEqual(conn.sent, [])
        self.assertEqual(engine.stats['errors'], 1)

    def test_not_connected_reconnect_succeeds(self):
        conn, engine = self.make(connected=False, replies=[REPLY])
        self.assertEqual(engine.exchange(REQUEST, bytearray(16)), len(REPLY))
        self.assertEqual(conn.reconnects, 1)

    def test_guard_timeout(self):
        """Test a busy guard fails fast without touching the wire"""
        conn, engine = self.make(replies=[REPLY])
        engine._guard.acquire()
        try:
            self.assertTrue(engine.busy)
            result = engine.transact(REQUEST, bytearray(16))
        finally:
            engine._guard.release()
        self.assertEqual(result, (0, ExchangeOutcome.GUARD_TIMEOUT))
        self.assertEqual(conn.sent, [])
        self.assertEqual(engine.stats['errors'], 1)
        self.assertEqual(engine.transaction_id, 1)

    def test_reconnect_only_while_holding_guard(self):
        """Test a waiting caller does not replace the socket of a running exchange"""
        conn = FakeConnection(replies=[PEER_CLOSED, REPLY])
        engine = Transceiver(conn, response_delay_s=0, guard_timeout_s=0.05)
        entered, release = threading.Event(), threading.Event()

        scripted_receive = conn.receive_into

        def blocking_receive(buffer):
            count = scripted_receive(buffer)
            if not entered.is_set():
                entered.set()
                release.wait(5)
            return count

        reconnect_callers = []
        scripted_reconnect = conn.reconnect

        def recording_reconnect():
            reconnect_callers.append((threading.current_thread().name, engine.busy))
            return scripted_reconnect()

        conn.receive_into = blocking_receive
        conn.reconnect = recording_reconnect

        worker = threading.Thread(target=engine.exchange, args=(REQUEST, bytearray(16)),
                                  name="first")
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            self.assertFalse(conn.connected)
            result = engine.transact(REQUEST, bytearray(16))
        finally:
            release.set()
            worker.join(5)

        self.assertEqual(result, (0, ExchangeOutcome.GUARD_TIMEOUT))
        self.assertEqual(reconnect_callers, [("first", True)])
        self.assertFalse(engine.busy)

    def test_guard_released_after_exception(self):
        """Test guard is released when something unexpected escapes"""
        conn, engine = self.make(send_errors=[RuntimeError("boom")])
        with self.assertRaises(RuntimeError):
            engine.exchange(REQUEST, bytearray(16))
        self.assertFalse(engine.busy)

    def test_error_threshold_warning(self):
        conn = FakeConnection(connected=False, reconnect_ok=False)
        engine = Transceiver(conn, error_log_threshold=2)
        with self.assertLogs('protocols.modbus.transceiver', level='WARNING') as logs:
            engine.exchange(REQUEST, bytearray(16))
            engine.exchange(REQUEST, bytearray(16))
        self.assertTrue(any("error count reached 2" in line for line in logs.output))

    def test_wire_trace(self):
        conn, engine = self.make(replies=[REPLY])
        engine.logging_enabled = True
        with self.assertLogs('protocols.modbus.transceiver', level='DEBUG') as logs:
            engine.exchange(REQUEST, bytearray(16))
        self.assertTrue(any("tx> msg:[0001]" in line for line in logs.output))
        self.assertTrue(any("rx< msg:[0001]" in line for line in logs.output))


if __name__ == '__main__':
    # Run tests with verbose output
    unittest.main(verbosity=2)
