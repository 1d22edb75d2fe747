#!/usr/bin/env python3
"""
test_cli.py — pytest suite for the command-line front end
==========================================================

Every subcommand is driven through run_cli() against the virtual ECU
(--transport loopback), so no hardware is needed.
"""

import argparse
import sys

import pytest

import mems_link as ml


def run(capsys, *argv):
    args = ml.build_parser().parse_args(list(argv))
    rc = ml.run_cli(args)
    return rc, capsys.readouterr().out


def csv_lines(out):
    return [line for line in out.splitlines() if "," in line]


# ═══════════════════════════════════════════════════════════════════════
# ARGUMENT PARSING
# ═══════════════════════════════════════════════════════════════════════

class TestParser:

    def test_defaults(self):
        args = ml.build_parser().parse_args(["read"])
        assert args.port == "/dev/ttyUSB0"
        assert args.transport == "pyserial"
        assert args.generation == "extended"
        assert args.units is None
        assert args.count == 1
        assert args.timeout == ml.DEFAULT_READ_TIMEOUT_MS

    def test_move_iac_accepts_hex(self):
        args = ml.build_parser().parse_args(["move-iac", "0x40"])
        assert args.target == 0x40

    def test_send_options(self):
        args = ml.build_parser().parse_args(["send", "F4", "--reply", "1"])
        assert args.byte == 0xF4
        assert args.reply == 1

    def test_invalid_transport_rejected(self):
        with pytest.raises(SystemExit):
            ml.build_parser().parse_args(["read", "--transport", "can"])

    def test_parse_count(self):
        assert ml.parse_count("inf") is None
        assert ml.parse_count("INF") is None
        assert ml.parse_count("5") == 5
        assert ml.parse_count("0x10") == 16

    @pytest.mark.parametrize("value", ["0", "-3"])
    def test_parse_count_rejects_non_positive(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            ml.parse_count(value)

    def test_parse_byte(self):
        assert ml.parse_byte("F4") == 0xF4
        assert ml.parse_byte("0x7d") == 0x7D
        with pytest.raises(argparse.ArgumentTypeError):
            ml.parse_byte("1FF")

    def test_iterations(self):
        assert list(ml.iterations(3)) == [0, 1, 2]
        assert next(iter(ml.iterations(None))) == 0


# ═══════════════════════════════════════════════════════════════════════
# OUTPUT FORMATTING
# ═══════════════════════════════════════════════════════════════════════

class TestFormatting:

    def _snapshot(self, generation, units=None):
        t = ml.LoopbackTransport()
        c = ml.MemsComm(t, ml.CommConfig(generation=generation, units=units))
        c.connect()
        return c.read_telemetry()

    def test_extended_native(self):
        text = ml.format_snapshot(self._snapshot(ml.ProtocolGeneration.EXTENDED))
        assert "RPM: 850" in text
        assert "Coolant (raw): 140" in text
        assert "MAP (kPa): 35.00" in text
        assert "Lambda (mV): 450" in text
        assert text.endswith("-------------")

    def test_basic_imperial(self):
        text = ml.format_snapshot(self._snapshot(ml.ProtocolGeneration.BASIC))
        assert "deg F" in text
        assert "MAP (psi)" in text
        assert "Lambda" not in text

    def test_cli_log_callback(self, capsys):
        ml.cli_log_callback("boom", "error")
        ml.cli_log_callback("done", "success")
        ml.cli_log_callback("plain")
        out = capsys.readouterr().out.splitlines()
        assert out == ["✗ boom", "✓ done", "  plain"]


# ═══════════════════════════════════════════════════════════════════════
# COMMANDS AGAINST THE VIRTUAL ECU
# ═══════════════════════════════════════════════════════════════════════

class TestCommands:

    def test_read(self, capsys):
        rc, out = run(capsys, "read", "--transport", "loopback")
        assert rc == 0
        assert "ECU ID: 99 00 03 03" in out
        assert "RPM: 850" in out

    def test_read_count(self, capsys):
        rc, out = run(capsys, "read", "--transport", "loopback", "--count", "3")
        assert rc == 0
        assert out.count("RPM: 850") == 3

    def test_read_imperial_units(self, capsys):
        rc, out = run(capsys, "read", "--transport", "loopback", "--units", "imperial")
        assert rc == 0
        assert "Coolant (deg F)" in out

    def test_read_raw_extended(self, capsys):
        rc, out = run(capsys, "read-raw", "--transport", "loopback", "--count", "2")
        assert rc == 0
        lines = csv_lines(out)
        assert len(lines) == 2
        values = lines[0].split(",")
        assert len(values) == ml.FRAME_80_SIZE + ml.FRAME_7D_SIZE
        assert values[:3] == ["28", "3", "82"]

    def test_read_raw_basic(self, capsys):
        rc, out = run(capsys, "read-raw", "--transport", "loopback", "--generation", "basic")
        assert rc == 0
        assert len(csv_lines(out)[0].split(",")) == ml.FRAME_80_SIZE

    def test_read_iac(self, capsys):
        rc, out = run(capsys, "read-iac", "--transport", "loopback")
        assert rc == 0
        assert "0x20" in out

    def test_move_iac(self, capsys):
        rc, _ = run(capsys, "move-iac", "0x30", "--transport", "loopback")
        assert rc == 0

    def test_move_iac_out_of_range(self, capsys):
        rc, out = run(capsys, "move-iac", "0x200", "--transport", "loopback")
        assert rc == 1
        assert "Error" in out

    def test_iac_open(self, capsys):
        rc, _ = run(capsys, "iac-open", "--transport", "loopback")
        assert rc == 0

    def test_iac_close(self, capsys, monkeypatch):
        transport = ml.LoopbackTransport()
        monkeypatch.setattr(ml, "make_transport", lambda args: transport)
        rc, _ = run(capsys, "iac-close", "--transport", "loopback")
        assert rc == 0
        assert transport.iac_position == 0
        closes = transport.sent_commands().count(ml.Command.CLOSE_IAC)
        assert closes == 0x20 + ml.IAC_CLOSE_OVERRUN - 1

    @pytest.mark.parametrize("command", ["fuelpump", "ptc", "ac"])
    def test_relay_cycles(self, capsys, monkeypatch, command):
        monkeypatch.setattr(ml, "ACTUATOR_HOLD_S", 0)
        rc, _ = run(capsys, command, "--transport", "loopback")
        assert rc == 0

    @pytest.mark.parametrize("command", ["coil", "injectors", "clear-faults", "heartbeat"])
    def test_single_shot_commands(self, capsys, command):
        rc, _ = run(capsys, command, "--transport", "loopback")
        assert rc == 0

    def test_send_with_reply(self, capsys):
        rc, out = run(capsys, "send", "F4", "--reply", "1", "--transport", "loopback")
        assert rc == 0
        assert "RX: 00" in out

    def test_send_echo_only(self, capsys):
        rc, out = run(capsys, "send", "CA", "--transport", "loopback")
        assert rc == 0
        assert "(echo only)" in out

    def test_ports(self, capsys, monkeypatch):
        monkeypatch.setattr(ml.PySerialTransport, "list_ports",
                            staticmethod(lambda: ["/dev/ttyUSB0", "/dev/ttyUSB1"]))
        rc, out = run(capsys, "ports")
        assert rc == 0
        assert "/dev/ttyUSB1" in out

    def test_no_ports(self, capsys, monkeypatch):
        monkeypatch.setattr(ml.PySerialTransport, "list_ports", staticmethod(lambda: []))
        rc, out = run(capsys, "ports")
        assert rc == 0
        assert "No serial ports found" in out


class TestFailures:

    def test_silent_ecu(self, capsys, monkeypatch):
        transport = ml.LoopbackTransport()
        transport.silent = True
        monkeypatch.setattr(ml, "make_transport", lambda args: transport)
        rc, out = run(capsys, "read", "--transport", "loopback")
        assert rc == 1
        assert "Error sending startup command" in out
        assert not transport.is_open

    def test_bad_port(self, capsys):
        rc, out = run(capsys, "read", "--port", "/dev/does-not-exist-mems")
        assert rc == 1
        assert "Could not open serial device" in out

    def test_read_failure_exit_code(self, capsys, monkeypatch):
        transport = ml.LoopbackTransport()
        transport.truncate_frames = 5
        monkeypatch.setattr(ml, "make_transport", lambda args: transport)
        rc, _ = run(capsys, "read", "--transport", "loopback")
        assert rc == 1

    def test_keyboard_interrupt(self, capsys, monkeypatch):
        def interrupted(self):
            raise KeyboardInterrupt
        monkeypatch.setattr(ml.MemsComm, "heartbeat", interrupted)
        rc, out = run(capsys, "heartbeat", "--transport", "loopback")
        assert rc == 130
        assert "Cancelled by user" in out


class TestMain:

    def test_no_command_prints_help(self, capsys, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mems-link"])
        assert ml.main() == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_main_runs_command(self, capsys, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mems-link", "heartbeat", "--transport", "loopback"])
        assert ml.main() == 0
