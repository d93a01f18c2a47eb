#!/usr/bin/env python3
"""
Modbus TCP Master CLI Interface

Interactive command-line interface for poking registers and coils on a
controller.

Usage:
    python3 modbus_cli.py [host] [port] [unit]

Commands:
    connect <host> [port] [unit]  - Connect to a controller
    unit <n>                      - Change device address
    read <addr>                   - Read holding register
    write <addr> <value>          - Write holding register
    input <addr>                  - Read input register
    coil <addr>                   - Read coil
    setcoil <addr> <on|off>       - Write coil
    trace <on|off>                - Log raw frames
    stats                         - Show statistics
    help                          - Show help
    exit                          - Exit program
"""

import sys
from typing import List

from config import MODBUS_CONFIG, configure_logging
from protocols.modbus import (
    COIL_OFF, COIL_ON, ModbusClient, ModbusSettings, ModbusStatus, describe_status,
)


def _int(text: str) -> int:
    """Accept decimal or 0x-prefixed values."""
    return int(text, 0)


class ModbusCLI:
    """Interactive CLI for a single controller."""

    def __init__(self):
        """Initialize CLI."""
        self.client = ModbusClient(ModbusSettings())

    def run_interactive(self):
        """Run interactive CLI."""
        print("=" * 70)
        print("MODBUS/TCP Master - Interactive CLI")
        print("=" * 70)
        print("\nType 'help' for available commands\n")

        while True:
            try:
                cmd = input("\nMODBUS> ").strip()

                if not cmd:
                    continue

                parts = cmd.split()
                command = parts[0].lower()
                args = parts[1:]

                if command in ('exit', 'quit'):
                    print("\nExiting...")
                    break

                if not self.dispatch(command, args):
                    print("Unknown command. Type 'help' for available commands.")

            except (KeyboardInterrupt, EOFError):
                print("\n\nExiting...")
                break
            except ValueError as e:
                print(f"Error: {e}")

        self.client.shutdown()

    def dispatch(self, command: str, args: List[str]) -> bool:
        """Run one command. Returns False if the command is not recognised."""
        if command == 'help':
            self.show_help()
        elif command == 'connect' and args:
            self.cmd_connect(*args[:3])
        elif command == 'unit' and args:
            self.client.device_address = _int(args[0])
            print(f"Device address set to {self.client.device_address}")
        elif command == 'read' and args:
            self._print_read(self.client.read_holding_register(_int(args[0])))
        elif command == 'write' and len(args) >= 2:
            self._print_status(self.client.write_holding_register(_int(args[0]), _int(args[1])))
        elif command == 'input' and args:
            self._print_read(self.client.read_input_register(_int(args[0])))
        elif command == 'coil' and args:
            self._print_read(self.client.read_coil(_int(args[0])))
        elif command == 'setcoil' and len(args) >= 2:
            value = COIL_ON if args[1].lower() in ('on', '1', 'true') else COIL_OFF
            self._print_status(self.client.write_coil(_int(args[0]), value))
        elif command == 'trace' and args:
            self.client.logging_enabled = args[0].lower() == 'on'
            print(f"Wire trace {'enabled' if self.client.logging_enabled else 'disabled'}")
        elif command == 'stats':
            self.cmd_stats()
        else:
            return False
        return True

    def show_help(self):
        """Show help for available commands."""
        help_text = """
Available Commands:
  connect <host> [port] [unit]  - Connect to a controller (port default 502)
  unit <n>                      - Change device address (0-255)
  read <addr>                   - Read holding register
  write <addr> <value>          - Write holding register
  input <addr>                  - Read input register
  coil <addr>                   - Read coil
  setcoil <addr> <on|off>       - Write coil
  trace <on|off>                - Log raw transmitted/received frames
  stats                         - Show connection statistics
  help                          - Show this help message
  exit/quit                     - Exit the program

Examples:
  connect 192.168.1.50 502 1
  read 100
  write 100 0x1234
  setcoil 3 on
        """
        print(help_text)

    def cmd_connect(self, host: str, port: str = None, unit: str = None):
        """Connect to a controller."""
        port_num = _int(port) if port else MODBUS_CONFIG["port"]
        unit_num = _int(unit) if unit else None

        self.client.shutdown()
        print(f"Connecting to {host}:{port_num}...")
        if self.client.initialize(host, unit_num, port_num):
            print(f"✓ Connected (unit {self.client.device_address})")
        else:
            print(f"✗ Connection failed - {self.client.connection.last_error}")

    def cmd_stats(self):
        """Show statistics."""
        print(f"\n{self.client}")
        print("-" * 70)
        for key, value in self.client.stats.items():
            print(f"  {key:20s} {value}")

    def _print_status(self, status: int):
        marker = "✓" if status == ModbusStatus.NO_ERROR else "✗"
        print(f"{marker} {describe_status(status)}")

    def _print_read(self, result):
        if result.status == ModbusStatus.NO_ERROR:
            print(f"✓ {result.value} (0x{result.value:04X})")
        else:
            self._print_status(result.status)


def main():
    """Entry point."""
    configure_logging("WARNING")
    cli = ModbusCLI()

    if len(sys.argv) > 1:
        cli.cmd_connect(*sys.argv[1:4])

    cli.run_interactive()
    return 0


if __name__ == "__main__":
    sys.exit(main())
