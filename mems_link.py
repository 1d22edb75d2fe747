#!/usr/bin/env python3
"""
mems_link.py — Rover MEMS ECU Diagnostic Link
==============================================

Host side of the Rover MEMS diagnostic serial protocol: link handshake,
command/echo transactions, two-frame telemetry decode, actuator tests and
an idle-air-control positioning loop, all serialized per connection.

Target Hardware:
    ECU:    Rover MEMS 1.6 / 1.9 (Mini SPi / MPi, MG, Rover K-series)
    Link:   9600 baud 8N1 half-duplex serial via USB/TTL cable
    Style:  every command byte is echoed back before any reply data

Architecture:
    Single-file module with a CLI front end.
    Transports are pluggable: pyserial, FTDI D2XX, or an in-memory
    virtual ECU (LoopbackTransport) for offline testing.
    One MemsComm = one transport = one lock = one transaction at a time.

Requires: Python 3.10+, pyserial, rich
Optional: ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 mems-link contributors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import os
import time
import logging
import argparse
import itertools
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, fields, asdict
from enum import IntEnum, IntFlag, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Any, ClassVar, NamedTuple, Iterable

import serial
import serial.tools.list_ports
from rich.logging import RichHandler

# FTDI D2XX — optional
try:
    import ftd2xx
    D2XX_AVAILABLE = True
except ImportError:
    D2XX_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "MEMS Link"
__target_ecu__ = "Rover MEMS 1.6 / 1.9"

# ── Logging Setup ──
LOG_DIR = Path(os.environ.get("MEMS_LINK_LOG_DIR", Path(__file__).resolve().parent / "logs"))


def setup_logging(
    name: str = "mems_link",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Logger level (DEBUG captures every TX/RX byte to file).
        console_level: Level for console output (WARNING+ by default).
        log_dir:       Override log directory (default: LOG_DIR).
        rich_console:  Use the Rich handler for the console.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir or LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("=" * 60)

    return logger

log = setup_logging()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

class Command(IntEnum):
    """Single-byte MEMS commands. Every one is echoed by the ECU."""
    # Link initialization
    SYNC_A = 0xCA
    SYNC_B = 0x75
    INIT_ID = 0xD0              # echo is followed by 4 ID bytes

    # Data requests
    REQ_DATA_7D = 0x7D
    REQ_DATA_80 = 0x80
    CLEAR_FAULTS = 0xCC
    HEARTBEAT = 0xF4            # echo is followed by 0x00
    GET_IAC_POSITION = 0xFB

    # Actuators (relays auto-release after < 1s on MEMS 1.6)
    FUEL_PUMP_ON = 0x11
    FUEL_PUMP_OFF = 0x01
    PTC_RELAY_ON = 0x12
    PTC_RELAY_OFF = 0x02
    AC_RELAY_ON = 0x13
    AC_RELAY_OFF = 0x03
    TEST_INJECTORS = 0xF7
    FIRE_COIL = 0xF8
    OPEN_IAC = 0xFD
    CLOSE_IAC = 0xFE


class ProtocolGeneration(Enum):
    """Which frame set the ECU speaks. Chosen once per connection."""
    BASIC = "basic"             # 0x80 frame only
    EXTENDED = "extended"       # 0x80 + 0x7D frames


class UnitSystem(Enum):
    """Engineering units for decoded temperatures and pressure."""
    NATIVE = "native"           # raw temperature counts, kPa
    IMPERIAL = "imperial"       # degrees F, psi


ACTUATOR_COMMANDS = frozenset({
    Command.FUEL_PUMP_ON, Command.FUEL_PUMP_OFF,
    Command.PTC_RELAY_ON, Command.PTC_RELAY_OFF,
    Command.AC_RELAY_ON, Command.AC_RELAY_OFF,
    Command.TEST_INJECTORS, Command.FIRE_COIL,
    Command.OPEN_IAC, Command.CLOSE_IAC,
})

# Commands whose echo is followed by exactly one reply byte
ONE_BYTE_REPLY_COMMANDS = ACTUATOR_COMMANDS | {
    Command.GET_IAC_POSITION, Command.CLEAR_FAULTS, Command.HEARTBEAT,
}

# Handshake: (command, trailing reply bytes after the echo)
HANDSHAKE_SEQUENCE: Tuple[Tuple[int, int], ...] = (
    (Command.SYNC_A, 0),
    (Command.SYNC_B, 0),
    (Command.HEARTBEAT, 1),
    (Command.INIT_ID, 4),
)
ECU_ID_SIZE = 4

# ── Line settings ──
DEFAULT_BAUD = 9600
DEFAULT_READ_TIMEOUT_MS = 100       # inter-byte timeout, VTIME=1 on POSIX
DEFAULT_WRITE_TIMEOUT_MS = 1000

# ── Frame sizes ──
FRAME_80_SIZE = 28
FRAME_7D_SIZE = 32

# ── Idle air control ──
IAC_MAXIMUM = 0xB4
IAC_MAX_ATTEMPTS = 300
IAC_CLOSE_OVERRUN = 80              # extra close steps once fully closed

# ── Conversions ──
TEMP_ZERO_OFFSET = 55
KPA_PER_PSI = 6.89475729

# ── CLI ──
ACTUATOR_HOLD_S = 2.0


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class MemsError(Exception):
    """Base class for every protocol and transport failure."""


class TransportError(MemsError):
    """Raised when a transport cannot be opened or fails during I/O."""


class TransportUnavailable(MemsError):
    """Raised when an operation needs a transport that is not open."""

    def __init__(self, msg: str = "Not connected to ECU"):
        super().__init__(msg)


class ShortWrite(MemsError):
    def __init__(self, expected: int, written: int):
        self.expected = expected
        self.written = written
        super().__init__(f"Short write: sent {written} of {expected} bytes")


class ShortRead(MemsError):
    def __init__(self, expected: int, received: int, msg: Optional[str] = None):
        self.expected = expected
        self.received = received
        super().__init__(msg or f"Short read: expected {expected} bytes, got {received}")


class FrameSizeError(ShortRead):
    """A raw frame whose length does not match its fixed layout."""

    def __init__(self, name: str, expected: int, received: int):
        self.name = name
        super().__init__(expected, received,
                         f"{name}: frame must be {expected} bytes, got {received}")


class EchoMismatch(MemsError):
    def __init__(self, sent: int, received: int):
        self.sent = sent
        self.received = received
        super().__init__(
            f"Echo mismatch: sent 0x{sent:02X}, received 0x{received:02X}"
        )


class HandshakeStepFailed(MemsError):
    """Link initialization aborted at *step* (1-4)."""

    def __init__(self, step: int, command: int, cause: MemsError):
        self.step = step
        self.command = command
        self.cause = cause
        super().__init__(
            f"Handshake step {step} (0x{command:02X}) failed: {cause}"
        )


class ConvergenceBoundExceeded(MemsError):
    def __init__(self, target: int, position: int, attempts: int):
        self.target = target
        self.position = position
        self.attempts = attempts
        super().__init__(
            f"IAC did not reach 0x{target:02X} after {attempts} steps "
            f"(stopped at 0x{position:02X})"
        )


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — RAW FRAME LAYOUTS
# ═══════════════════════════════════════════════════════════════════════
#
# Field order is wire order: field N is byte N of the frame. Frames are
# parsed byte by byte after the total length has been checked.

def _word(hi: int, lo: int) -> int:
    return (hi << 8) | lo


def _parse_frame(cls, data: bytes):
    if len(data) != cls.SIZE:
        raise FrameSizeError(cls.__name__, cls.SIZE, len(data))
    return cls(**{f.name: data[i] for i, f in enumerate(fields(cls))})


@dataclass(frozen=True)
class Frame80:
    """Reply to 0x80: the primary data frame (28 bytes)."""
    SIZE: ClassVar[int] = FRAME_80_SIZE

    bytes_in_frame: int = 0             # 0
    engine_rpm_hi: int = 0              # 1
    engine_rpm_lo: int = 0              # 2
    coolant_temp: int = 0               # 3
    ambient_temp: int = 0               # 4
    intake_air_temp: int = 0            # 5
    fuel_temp: int = 0                  # 6
    map_kpa: int = 0                    # 7
    battery_voltage: int = 0            # 8  /10 for volts
    throttle_pot: int = 0               # 9  *0.02 for volts
    idle_switch: int = 0                # 10
    unknown0: int = 0                   # 11
    park_neutral_switch: int = 0        # 12
    dtc0: int = 0                       # 13
    dtc1: int = 0                       # 14
    idle_setpoint: int = 0              # 15
    idle_hot: int = 0                   # 16
    unknown1: int = 0                   # 17
    iac_position: int = 0               # 18
    idle_error_hi: int = 0              # 19
    idle_error_lo: int = 0              # 20
    ignition_advance_offset: int = 0    # 21
    ignition_advance: int = 0           # 22 *0.5 - 24 for degrees
    coil_time_hi: int = 0               # 23
    coil_time_lo: int = 0               # 24 *0.002 for ms
    crankshaft_pos: int = 0             # 25
    unknown2: int = 0                   # 26
    unknown3: int = 0                   # 27

    @classmethod
    def from_bytes(cls, data: bytes) -> "Frame80":
        return _parse_frame(cls, data)

    def to_bytes(self) -> bytes:
        return bytes(getattr(self, f.name) for f in fields(self))

    @property
    def engine_rpm(self) -> int:
        return _word(self.engine_rpm_hi, self.engine_rpm_lo)

    @property
    def idle_error(self) -> int:
        return _word(self.idle_error_hi, self.idle_error_lo)

    @property
    def coil_time_raw(self) -> int:
        return _word(self.coil_time_hi, self.coil_time_lo)


@dataclass(frozen=True)
class Frame7D:
    """Reply to 0x7D: the secondary data frame (32 bytes, EXTENDED only).

    Unknown bytes are kept so raw dumps stay byte-exact.
    """
    SIZE: ClassVar[int] = FRAME_7D_SIZE

    bytes_in_frame: int = 0             # 0
    ignition_switch_state: int = 0      # 1
    throttle_angle: int = 0             # 2  *0.6 for degrees
    unknown4: int = 0                   # 3
    air_fuel_ratio: int = 0             # 4  /10 for ratio
    dtc2: int = 0                       # 5
    lambda_voltage: int = 0             # 6  *5 for mV
    lambda_freq: int = 0                # 7
    lambda_dutycycle: int = 0           # 8
    lambda_status: int = 0              # 9
    closed_loop: int = 0                # 10
    long_term_fuel_trim: int = 0        # 11
    short_term_fuel_trim: int = 0       # 12
    carbon_canister_duty_cycle: int = 0 # 13
    dtc3: int = 0                       # 14
    idle_base_pos: int = 0              # 15
    unknown5: int = 0                   # 16
    dtc4: int = 0                       # 17
    ignition_advance2: int = 0          # 18
    idle_speed_offset: int = 0          # 19
    idle_error2: int = 0                # 20
    unknown6: int = 0                   # 21
    unknown7: int = 0                   # 22
    unknown8: int = 0                   # 23
    unknown9: int = 0                   # 24
    unknownA: int = 0                   # 25
    unknownB: int = 0                   # 26
    unknownC: int = 0                   # 27
    unknownD: int = 0                   # 28
    unknownE: int = 0                   # 29
    unknownF: int = 0                   # 30
    unknown10: int = 0                  # 31

    @classmethod
    def from_bytes(cls, data: bytes) -> "Frame7D":
        return _parse_frame(cls, data)

    def to_bytes(self) -> bytes:
        return bytes(getattr(self, f.name) for f in fields(self))


class RawFrames(NamedTuple):
    """One telemetry acquisition: the 0x80 frame and, if EXTENDED, the 0x7D frame."""
    frame80: Frame80
    frame7d: Optional[Frame7D] = None


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — TELEMETRY DECODING
# ═══════════════════════════════════════════════════════════════════════

class FaultCode(IntFlag):
    """4-bit fault mask extracted from dtc0/dtc1."""
    COOLANT_SENSOR = 1 << 0
    INTAKE_AIR_SENSOR = 1 << 1
    FUEL_PUMP_CIRCUIT = 1 << 2
    THROTTLE_POT_CIRCUIT = 1 << 3


# (dtc byte index, bit in that byte, flag)
FAULT_BITS: List[Tuple[int, int, FaultCode]] = [
    (0, 0x01, FaultCode.COOLANT_SENSOR),
    (0, 0x02, FaultCode.INTAKE_AIR_SENSOR),
    (1, 0x02, FaultCode.FUEL_PUMP_CIRCUIT),
    (1, 0x80, FaultCode.THROTTLE_POT_CIRCUIT),
]


def temperature_to_fahrenheit(raw: int) -> int:
    """ECU temperature count to whole degrees F (count 55 == 0 C)."""
    return int((raw - TEMP_ZERO_OFFSET) * 1.8 + 32)


def kpa_to_psi(kpa: float) -> float:
    return kpa / KPA_PER_PSI


def decode_fault_codes(dtc0: int, dtc1: int) -> FaultCode:
    dtc = (dtc0, dtc1)
    mask = FaultCode(0)
    for index, bit, flag in FAULT_BITS:
        if dtc[index] & bit:
            mask |= flag
    return mask


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Decoded view of one frame acquisition.

    Temperatures and ``map_pressure`` are in ``units``. Fields after
    ``units`` are only populated by the EXTENDED generation.
    """
    engine_rpm: int
    coolant_temp: int
    ambient_temp: int
    intake_air_temp: int
    map_pressure: float
    battery_voltage: float
    throttle_pot_voltage: float
    idle_switch: int
    park_neutral_switch: int
    fault_codes: FaultCode
    iac_position: int
    units: UnitSystem
    fuel_temp: Optional[int] = None
    idle_error: Optional[int] = None
    ignition_advance: Optional[float] = None
    coil_time: Optional[float] = None
    lambda_voltage_mv: Optional[int] = None
    fuel_trim: Optional[int] = None
    closed_loop: Optional[int] = None
    idle_base_pos: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["fault_codes"] = int(self.fault_codes)
        d["units"] = self.units.value
        return d


def decode_telemetry(frames: RawFrames,
                     units: UnitSystem = UnitSystem.NATIVE) -> TelemetrySnapshot:
    """Map raw frames to a TelemetrySnapshot. Pure function of the input bytes."""
    f80 = frames.frame80
    f7d = frames.frame7d

    if units is UnitSystem.IMPERIAL:
        temp = temperature_to_fahrenheit
        pressure = kpa_to_psi(f80.map_kpa)
    else:
        temp = int
        pressure = float(f80.map_kpa)

    extended: Dict[str, Any] = {}
    if f7d is not None:
        extended = dict(
            fuel_temp=temp(f80.fuel_temp),
            idle_error=f80.idle_error,
            ignition_advance=f80.ignition_advance * 0.5 - 24.0,
            coil_time=f80.coil_time_raw * 0.002,
            lambda_voltage_mv=f7d.lambda_voltage * 5,
            fuel_trim=f7d.short_term_fuel_trim,
            closed_loop=1 if f7d.closed_loop else 0,
            idle_base_pos=f7d.idle_base_pos,
        )

    return TelemetrySnapshot(
        engine_rpm=f80.engine_rpm,
        coolant_temp=temp(f80.coolant_temp),
        ambient_temp=temp(f80.ambient_temp),
        intake_air_temp=temp(f80.intake_air_temp),
        map_pressure=pressure,
        battery_voltage=f80.battery_voltage / 10.0,
        throttle_pot_voltage=f80.throttle_pot * 0.02,
        idle_switch=1 if f80.idle_switch else 0,
        park_neutral_switch=1 if f80.park_neutral_switch else 0,
        fault_codes=decode_fault_codes(f80.dtc0, f80.dtc1),
        iac_position=f80.iac_position,
        units=units,
        **extended,
    )


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — TRANSPORT LAYER (Serial / D2XX / Loopback)
# ═══════════════════════════════════════════════════════════════════════

class BaseTransport:
    """Abstract base for all byte transports.

    ``read`` returns at most *count* bytes and may return fewer (or none)
    once the transport's inter-byte timeout elapses.
    """

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, count: int) -> bytes:
        raise NotImplementedError

    def flush_input(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """PySerial (COM port / tty / VCP) transport, 8N1, no flow control."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD,
                 read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS):
        self.port = port
        self.baud = baud
        self.read_timeout_ms = read_timeout_ms
        self._serial: Optional[serial.Serial] = None

    def open(self) -> None:
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.read_timeout_ms / 1000.0,
                write_timeout=DEFAULT_WRITE_TIMEOUT_MS / 1000.0,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            self._serial.reset_input_buffer()
            log.info("Opened %s at %d baud", self.port, self.baud)
        except serial.SerialException as e:
            self._serial = None
            raise TransportError(f"Failed to open {self.port}: {e}") from e

    def close(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.close()
            log.info("Closed %s", self.port)
        self._serial = None

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise TransportError("Port not open")
        try:
            return self._serial.write(data) or 0
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def read(self, count: int) -> bytes:
        if not self.is_open:
            raise TransportError("Port not open")
        try:
            return bytes(self._serial.read(count))
        except serial.SerialException as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    def flush_input(self) -> None:
        if self.is_open:
            self._serial.reset_input_buffer()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @staticmethod
    def list_ports() -> List[str]:
        """List available serial ports."""
        return [p.device for p in serial.tools.list_ports.comports()]


class D2XXTransport(BaseTransport):
    """FTDI D2XX direct USB transport."""

    def __init__(self, device_index: int = 0, baud: int = DEFAULT_BAUD,
                 read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS):
        self.device_index = device_index
        self.baud = baud
        self.read_timeout_ms = read_timeout_ms
        self._device = None

    def open(self) -> None:
        if not D2XX_AVAILABLE:
            raise TransportError("ftd2xx not installed — pip install mems-link[d2xx]")
        try:
            self._device = ftd2xx.open(self.device_index)
            self._device.setBaudRate(self.baud)
            self._device.setDataCharacteristics(
                ftd2xx.defines.BITS_8,
                ftd2xx.defines.STOP_BITS_1,
                ftd2xx.defines.PARITY_NONE,
            )
            self._device.setFlowControl(ftd2xx.defines.FLOW_NONE, 0, 0)
            self._device.setTimeouts(self.read_timeout_ms, DEFAULT_WRITE_TIMEOUT_MS)
            self._device.setLatencyTimer(2)
            self._device.purge(ftd2xx.defines.PURGE_RX | ftd2xx.defines.PURGE_TX)
            log.info("Opened FTDI D2XX device %d at %d baud", self.device_index, self.baud)
        except ftd2xx.DeviceError as e:
            self._device = None
            raise TransportError(f"Failed to open D2XX device {self.device_index}: {e}") from e

    def close(self) -> None:
        if self._device:
            try:
                self._device.close()
            except ftd2xx.DeviceError as e:
                log.warning("Error closing D2XX device %d: %s", self.device_index, e)
            self._device = None

    def write(self, data: bytes) -> int:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            return self._device.write(data)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Write to D2XX device {self.device_index} failed: {e}") from e

    def read(self, count: int) -> bytes:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            return bytes(self._device.read(count))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Read from D2XX device {self.device_index} failed: {e}") from e

    def flush_input(self) -> None:
        if self._device:
            try:
                self._device.purge(ftd2xx.defines.PURGE_RX)
            except ftd2xx.DeviceError as e:
                raise TransportError(f"Purge of D2XX device {self.device_index} failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._device is not None


# Frames served by the virtual ECU: warm idle, closed loop
DEFAULT_FRAME_80 = Frame80(
    bytes_in_frame=FRAME_80_SIZE,
    engine_rpm_hi=0x03, engine_rpm_lo=0x52,         # 850 rpm
    coolant_temp=140, ambient_temp=75, intake_air_temp=80, fuel_temp=70,
    map_kpa=35, battery_voltage=138, throttle_pot=30,
    idle_switch=1, park_neutral_switch=0,
    idle_setpoint=0, idle_hot=35,
    iac_position=0x20,
    idle_error_hi=0x00, idle_error_lo=0x0C,
    ignition_advance_offset=0x80, ignition_advance=64,
    coil_time_hi=0x07, coil_time_lo=0xD0,           # 4.0 ms
).to_bytes()

DEFAULT_FRAME_7D = Frame7D(
    bytes_in_frame=FRAME_7D_SIZE,
    ignition_switch_state=1, throttle_angle=10, air_fuel_ratio=147,
    lambda_voltage=90, lambda_status=1, closed_loop=1,
    long_term_fuel_trim=128, short_term_fuel_trim=100,
    idle_base_pos=0x1E,
).to_bytes()

IAC_POSITION_OFFSET = 18


class LoopbackTransport(BaseTransport):
    """
    In-memory virtual MEMS ECU for testing without hardware.

    Every written byte is echoed and answered the way a MEMS 1.9 ECU
    answers it. Public attributes inject faults:

        silent           no reply at all (ECU off / cable unplugged)
        echo_only        echo commands but send no reply bytes after them
        echo_overrides   {command: byte} echoed instead of the command
        truncate_frames  serve only the first N bytes of each data frame
        fail_writes      write() reports 0 bytes written
        max_chunk        cap on bytes returned by a single read()
        latency_s        sleep before every read()

    ``wire_log`` records ("tx" | "rx", bytes) in transport order.
    """

    ECU_ID = bytes([0x99, 0x00, 0x03, 0x03])
    INJECTOR_REPLY = 0x03

    def __init__(self, iac_position: int = 0x20, iac_step: int = 1,
                 frame80: Optional[bytes] = None, frame7d: Optional[bytes] = None):
        self._rx_buffer = bytearray()
        self._opened = False
        self.wire_log: List[Tuple[str, bytes]] = []

        self.iac_position = iac_position
        self.iac_step = iac_step
        self.frame80 = bytearray(frame80 if frame80 is not None else DEFAULT_FRAME_80)
        self.frame7d = bytearray(frame7d if frame7d is not None else DEFAULT_FRAME_7D)
        self.ecu_id = self.ECU_ID

        self.silent = False
        self.echo_only = False
        self.echo_overrides: Dict[int, int] = {}
        self.truncate_frames: Optional[int] = None
        self.fail_writes = False
        self.max_chunk: Optional[int] = None
        self.latency_s = 0.0

    def open(self) -> None:
        self._opened = True
        log.info("Loopback transport opened (virtual ECU)")

    def close(self) -> None:
        self._opened = False

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Loopback not open")
        self.wire_log.append(("tx", bytes(data)))
        if self.fail_writes:
            return 0
        for b in data:
            self._simulate_response(b)
        return len(data)

    def read(self, count: int) -> bytes:
        if not self._opened:
            raise TransportError("Loopback not open")
        if self.latency_s:
            time.sleep(self.latency_s)
        n = count if self.max_chunk is None else min(count, self.max_chunk)
        result = bytes(self._rx_buffer[:n])
        del self._rx_buffer[:n]
        if result:
            self.wire_log.append(("rx", result))
        return result

    def flush_input(self) -> None:
        self._rx_buffer.clear()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def bytes_available(self) -> int:
        return len(self._rx_buffer)

    def sent_commands(self) -> List[int]:
        """Every byte written so far, in order."""
        return [b for direction, data in self.wire_log if direction == "tx" for b in data]

    def _serve_frame(self, frame: bytearray) -> None:
        if self.truncate_frames is not None:
            self._rx_buffer.extend(frame[:self.truncate_frames])
        else:
            self._rx_buffer.extend(frame)

    def _simulate_response(self, cmd: int) -> None:
        """Queue the echo and reply bytes for one command byte."""
        if self.silent:
            return
        self._rx_buffer.append(self.echo_overrides.get(cmd, cmd))
        if self.echo_only:
            return

        if cmd in (Command.HEARTBEAT, Command.CLEAR_FAULTS):
            self._rx_buffer.append(0x00)
        elif cmd == Command.INIT_ID:
            self._rx_buffer.extend(self.ecu_id)
        elif cmd == Command.REQ_DATA_80:
            self.frame80[IAC_POSITION_OFFSET] = self.iac_position
            self._serve_frame(self.frame80)
        elif cmd == Command.REQ_DATA_7D:
            self._serve_frame(self.frame7d)
        elif cmd == Command.GET_IAC_POSITION:
            self._rx_buffer.append(self.iac_position)
        elif cmd == Command.OPEN_IAC:
            self.iac_position = min(IAC_MAXIMUM, self.iac_position + self.iac_step)
            self._rx_buffer.append(self.iac_position)
        elif cmd == Command.CLOSE_IAC:
            self.iac_position = max(0, self.iac_position - self.iac_step)
            self._rx_buffer.append(self.iac_position)
        elif cmd == Command.TEST_INJECTORS:
            self._rx_buffer.append(self.INJECTOR_REPLY)
        elif cmd in ONE_BYTE_REPLY_COMMANDS:
            self._rx_buffer.append(0x00)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — ECU COMMUNICATION ENGINE
# ═══════════════════════════════════════════════════════════════════════

class CommState(Enum):
    """Connection lifecycle."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    INITIALIZED = auto()
    ERROR = auto()
    CLOSED = auto()


@dataclass
class CommConfig:
    """Communication configuration."""
    generation: ProtocolGeneration = ProtocolGeneration.EXTENDED
    units: Optional[UnitSystem] = None      # None: generation default
    iac_max_attempts: int = IAC_MAX_ATTEMPTS

    @property
    def resolved_units(self) -> UnitSystem:
        if self.units is not None:
            return self.units
        if self.generation is ProtocolGeneration.BASIC:
            return UnitSystem.IMPERIAL
        return UnitSystem.NATIVE


class MemsComm:
    """
    High-level MEMS communication engine.

    Owns one transport and one lock. Every public operation that touches
    the transport runs as a single guarded transaction; concurrent callers
    are serialized. Failures are reported as ``False`` / ``None`` and
    recorded on ``last_error``, which is kept per calling thread.
    """

    def __init__(self, transport: BaseTransport, config: CommConfig = None):
        self.transport = transport
        self.config = config or CommConfig()
        self.state = CommState.DISCONNECTED
        self.ecu_id: Optional[bytes] = None
        self._lock = threading.Lock()
        self._local = threading.local()
        self._callbacks: Dict[str, List[Callable]] = {}

    @property
    def last_error(self) -> Optional[MemsError]:
        """The failure of this thread's most recent operation, or None."""
        return getattr(self._local, "last_error", None)

    @last_error.setter
    def last_error(self, err: Optional[MemsError]) -> None:
        self._local.last_error = err

    def __enter__(self) -> "MemsComm":
        if not self.connect():
            raise self.last_error
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log, state, position."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    def _set_state(self, state: CommState) -> None:
        self.state = state
        self.emit("state", state=state)

    # ── Concurrency Guard ──

    def with_lock(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run *func* holding the connection lock. Blocks until the lock is free.

        The lock is not reentrant: *func* must not call back into public
        MemsComm operations.
        """
        with self._lock:
            return func(*args, **kwargs)

    def _guarded(self, op: str, func: Callable[..., Any], *args) -> Any:
        try:
            result = self.with_lock(func, *args)
        except MemsError as e:
            self._fail(op, e)
            return None
        self.last_error = None
        return result

    def _fail(self, op: str, err: MemsError) -> None:
        self.last_error = err
        log.warning("%s failed: %s", op, err)
        self.emit("log", msg=f"{op} failed: {err}", level="error")

    # ── Low-Level Byte I/O (lock held) ──

    def _write(self, data: bytes) -> None:
        if not self.transport.is_open:
            raise TransportUnavailable()
        log.debug("TX [%d]: %s", len(data), data.hex(" "))
        written = self.transport.write(data)
        if written < len(data):
            raise ShortWrite(len(data), max(written, 0))

    def _read_exact(self, count: int) -> bytes:
        """Accumulate reads until *count* bytes arrive or a read comes back empty."""
        if not self.transport.is_open:
            raise TransportUnavailable()
        buf = bytearray()
        while len(buf) < count:
            chunk = self.transport.read(count - len(buf))
            if not chunk:
                break
            buf.extend(chunk)
        if buf:
            log.debug("RX [%d]: %s", len(buf), buf.hex(" "))
        if len(buf) < count:
            raise ShortRead(count, len(buf))
        return bytes(buf)

    def _send_command(self, command: int) -> bool:
        """Write one command byte and verify its echo."""
        self._write(bytes([command]))
        try:
            echo = self._read_exact(1)[0]
        except ShortRead:
            log.warning("No echo of command 0x%02X", command)
            raise
        if echo != command:
            raise EchoMismatch(command, echo)
        return True

    def _command_reply(self, command: int, reply_length: int = 1) -> bytes:
        self._send_command(command)
        return self._read_exact(reply_length)

    # ── Connection Lifecycle ──

    def _open(self) -> bool:
        if self.state is CommState.CLOSED:
            raise TransportUnavailable("Connection has been closed")
        if not self.transport.is_open:
            try:
                self.transport.open()
            except TransportError:
                self._set_state(CommState.ERROR)
                raise
            self._set_state(CommState.CONNECTED)
        return True

    def connect(self) -> bool:
        """Open the transport. Returns True if it is (already) open."""
        ok = self._guarded("connect", self._open) is not None
        if ok:
            self.emit("log", msg=f"Connected via {type(self.transport).__name__}", level="info")
        return ok

    def _disconnect(self) -> None:
        if self.transport.is_open:
            self.transport.close()
        self.ecu_id = None

    def disconnect(self) -> None:
        """Close the transport. The connection can be reopened with connect()."""
        self.with_lock(self._disconnect)
        if self.state is not CommState.CLOSED:
            self._set_state(CommState.DISCONNECTED)

    def close(self) -> None:
        """Release the transport for good; later operations fail."""
        self.with_lock(self._disconnect)
        self._set_state(CommState.CLOSED)

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    # ── Link Initialization ──

    def _init_link(self) -> bytes:
        reply = b""
        for step, (command, trailing) in enumerate(HANDSHAKE_SEQUENCE, start=1):
            try:
                self._send_command(command)
                reply = self._read_exact(trailing)
            except MemsError as e:
                raise HandshakeStepFailed(step, command, e) from e
        self.ecu_id = reply
        self._set_state(CommState.INITIALIZED)
        log.info("Link initialized, ECU ID %s", reply.hex(" "))
        return reply

    def init_link(self) -> Optional[bytes]:
        """Run the CA/75/F4/D0 handshake. Returns the 4 ECU ID bytes (uninterpreted)."""
        return self._guarded("init_link", self._init_link)

    # ── Command Transactions ──

    def send_command(self, command: int) -> bool:
        """Send one command byte; True iff it was written and echoed verbatim."""
        return self._guarded(f"command 0x{command:02X}", self._send_command, command) is not None

    def transact(self, command: int, reply_length: int = 0) -> Optional[bytes]:
        """Send a command and read *reply_length* bytes after its echo."""
        return self._guarded(f"command 0x{command:02X}", self._command_reply,
                             command, reply_length)

    # ── Telemetry ──

    def _read_frames(self) -> RawFrames:
        self._send_command(Command.REQ_DATA_80)
        frame80 = Frame80.from_bytes(self._read_exact(Frame80.SIZE))
        frame7d = None
        if self.config.generation is ProtocolGeneration.EXTENDED:
            self._send_command(Command.REQ_DATA_7D)
            frame7d = Frame7D.from_bytes(self._read_exact(Frame7D.SIZE))
        return RawFrames(frame80, frame7d)

    def read_raw(self) -> Optional[RawFrames]:
        """Acquire the raw data frame(s) without decoding."""
        return self._guarded("read_raw", self._read_frames)

    def read_telemetry(self) -> Optional[TelemetrySnapshot]:
        """Acquire and decode one telemetry snapshot. None if any step failed."""
        frames = self._guarded("read_telemetry", self._read_frames)
        if frames is None:
            return None
        return decode_telemetry(frames, self.config.resolved_units)

    # ── Actuators ──

    def _one_byte_reply(self, op: str, command: int) -> Optional[int]:
        reply = self._guarded(op, self._command_reply, command, 1)
        return None if reply is None else reply[0]

    def test_actuator(self, command: int) -> Optional[int]:
        """Send an actuator command; returns the reply byte after the echo."""
        if command not in ACTUATOR_COMMANDS:
            raise ValueError(f"0x{command:02X} is not an actuator command")
        return self._one_byte_reply(f"actuator 0x{command:02X}", command)

    def fuel_pump(self, on: bool) -> bool:
        cmd = Command.FUEL_PUMP_ON if on else Command.FUEL_PUMP_OFF
        return self.test_actuator(cmd) is not None

    def ptc_relay(self, on: bool) -> bool:
        """Manifold heater (PTC) relay."""
        cmd = Command.PTC_RELAY_ON if on else Command.PTC_RELAY_OFF
        return self.test_actuator(cmd) is not None

    def ac_relay(self, on: bool) -> bool:
        cmd = Command.AC_RELAY_ON if on else Command.AC_RELAY_OFF
        return self.test_actuator(cmd) is not None

    def test_injectors(self) -> bool:
        return self.test_actuator(Command.TEST_INJECTORS) is not None

    def fire_coil(self) -> bool:
        return self.test_actuator(Command.FIRE_COIL) is not None

    def clear_faults(self) -> bool:
        """Clear stored fault codes. The reply byte after the echo must arrive."""
        return self._one_byte_reply("clear_faults", Command.CLEAR_FAULTS) is not None

    def heartbeat(self) -> bool:
        """Ping the ECU. The reply byte must arrive; a nonzero value is only logged."""
        reply = self._one_byte_reply("heartbeat", Command.HEARTBEAT)
        if reply is None:
            return False
        if reply != 0x00:
            log.warning("Heartbeat reply 0x%02X (expected 0x00)", reply)
        return True

    # ── Idle Air Control ──

    def read_iac_position(self) -> Optional[int]:
        return self._one_byte_reply("read_iac_position", Command.GET_IAC_POSITION)

    def step_iac(self, close: bool) -> Optional[int]:
        """Move the IAC motor one step. Returns the position the ECU reports."""
        return self.test_actuator(Command.CLOSE_IAC if close else Command.OPEN_IAC)

    def move_iac(self, target: int) -> bool:
        """
        Step the IAC valve until the ECU reports *target*.

        The motor does not move one position per command, so the loop is
        capped at ``config.iac_max_attempts`` steps. Each step is its own
        transaction; other callers may interleave between steps.
        """
        if not 0 <= target <= IAC_MAXIMUM:
            raise ValueError(f"IAC target must be 0..{IAC_MAXIMUM}, got {target}")

        position = self.read_iac_position()
        if position is None:
            return False

        if position == target:
            log.debug("IAC already at 0x%02X, no movement needed", position)
            return True

        close = target < position
        log.info("Moving IAC 0x%02X -> 0x%02X (%s)", position, target,
                 "close" if close else "open")
        attempts = 0
        while position != target and attempts < self.config.iac_max_attempts:
            position = self.step_iac(close)
            if position is None:
                return False
            attempts += 1
            self.emit("position", position=position, target=target, attempt=attempts)

        if position != target:
            self._fail("move_iac", ConvergenceBoundExceeded(target, position, attempts))
            return False

        log.info("IAC reached 0x%02X after %d steps", target, attempts)
        return True


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print log messages to console."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")


def parse_count(value: str) -> Optional[int]:
    """Loop count for read commands: a number, or 'inf' (None) to run until Ctrl+C."""
    if value.lower() == "inf":
        return None
    count = int(value, 0)
    if count < 1:
        raise argparse.ArgumentTypeError("count must be >= 1 or 'inf'")
    return count


def parse_byte(value: str) -> int:
    b = int(value, 16)
    if not 0 <= b <= 0xFF:
        raise argparse.ArgumentTypeError(f"{value} is not a byte")
    return b


def iterations(count: Optional[int]) -> Iterable[int]:
    return itertools.count() if count is None else range(count)


def format_snapshot(snap: TelemetrySnapshot) -> str:
    """Human-readable block for one snapshot."""
    imperial = snap.units is UnitSystem.IMPERIAL
    t_unit = "deg F" if imperial else "raw"
    p_unit = "psi" if imperial else "kPa"
    lines = [
        f"RPM: {snap.engine_rpm}",
        f"Coolant ({t_unit}): {snap.coolant_temp}",
        f"Ambient ({t_unit}): {snap.ambient_temp}",
        f"Intake air ({t_unit}): {snap.intake_air_temp}",
        f"MAP ({p_unit}): {snap.map_pressure:.2f}",
        f"Main voltage: {snap.battery_voltage:.1f}",
        f"Throttle pot voltage: {snap.throttle_pot_voltage:.2f}",
        f"Idle switch: {snap.idle_switch}",
        f"Park/neutral switch: {snap.park_neutral_switch}",
        f"Fault codes: {int(snap.fault_codes)}",
        f"IAC position: {snap.iac_position}",
    ]
    if snap.idle_error is not None:
        lines += [
            f"Fuel temp ({t_unit}): {snap.fuel_temp}",
            f"Idle error: {snap.idle_error}",
            f"Ignition advance: {snap.ignition_advance:.1f}",
            f"Coil time (ms): {snap.coil_time:.3f}",
            f"Lambda (mV): {snap.lambda_voltage_mv}",
            f"Fuel trim: {snap.fuel_trim}",
            f"Closed loop: {snap.closed_loop}",
            f"Idle base position: {snap.idle_base_pos}",
        ]
    lines.append("-------------")
    return "\n".join(lines)


def make_transport(args: argparse.Namespace) -> BaseTransport:
    if args.transport == "loopback":
        return LoopbackTransport()
    if args.transport == "d2xx":
        return D2XXTransport(args.device_index or 0, DEFAULT_BAUD, args.timeout)
    return PySerialTransport(args.port, DEFAULT_BAUD, args.timeout)


def _relay_cycle(switch: Callable[[bool], bool]) -> bool:
    """Switch an actuator on, hold, switch it off."""
    if not switch(True):
        return False
    time.sleep(ACTUATOR_HOLD_S)
    return switch(False)


def _iac_close_fully(comm: MemsComm) -> bool:
    # Diagnostic tools keep closing after the valve reports 0; do the same.
    overrun = IAC_CLOSE_OVERRUN
    for _ in range(comm.config.iac_max_attempts + IAC_CLOSE_OVERRUN):
        position = comm.step_iac(close=True)
        if position is None:
            return False
        if position == 0:
            overrun -= 1
            if overrun == 0:
                return True
    return False


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    if args.command == "ports":
        ports = PySerialTransport.list_ports()
        if ports:
            print("Available ports:")
            for p in ports:
                print(f"  {p}")
        else:
            print("No serial ports found")
        return 0

    print(f"\n{__app_name__} v{__version__}")
    print(f"Running command: {args.command}\n")

    config = CommConfig(
        generation=ProtocolGeneration(args.generation),
        units=UnitSystem(args.units) if args.units else None,
    )
    comm = MemsComm(make_transport(args), config)
    comm.on("log", cli_log_callback)

    if not comm.connect():
        print(f"✗ Could not open serial device ({args.port})")
        return 1

    try:
        ecu_id = comm.init_link()
        if ecu_id is None:
            print("✗ Error sending startup command")
            return 1
        print(f"  ECU ID: {ecu_id.hex(' ')}")

        if args.command == "read":
            success = False
            for _ in iterations(args.count):
                snap = comm.read_telemetry()
                if snap:
                    print(format_snapshot(snap))
                    success = True
            return 0 if success else 1

        elif args.command == "read-raw":
            success = False
            for _ in iterations(args.count):
                frames = comm.read_raw()
                if frames:
                    raw = frames.frame80.to_bytes()
                    if frames.frame7d is not None:
                        raw += frames.frame7d.to_bytes()
                    print(",".join(str(b) for b in raw))
                    success = True
            return 0 if success else 1

        elif args.command == "read-iac":
            position = comm.read_iac_position()
            if position is None:
                return 1
            print(f"0x{position:02X}")
            return 0

        elif args.command == "move-iac":
            return 0 if comm.move_iac(args.target) else 1

        elif args.command == "iac-open":
            return 0 if comm.move_iac(IAC_MAXIMUM) else 1

        elif args.command == "iac-close":
            return 0 if _iac_close_fully(comm) else 1

        elif args.command == "fuelpump":
            return 0 if _relay_cycle(comm.fuel_pump) else 1

        elif args.command == "ptc":
            return 0 if _relay_cycle(comm.ptc_relay) else 1

        elif args.command == "ac":
            return 0 if _relay_cycle(comm.ac_relay) else 1

        elif args.command == "coil":
            return 0 if comm.fire_coil() else 1

        elif args.command == "injectors":
            return 0 if comm.test_injectors() else 1

        elif args.command == "clear-faults":
            return 0 if comm.clear_faults() else 1

        elif args.command == "heartbeat":
            return 0 if comm.heartbeat() else 1

        elif args.command == "send":
            reply = comm.transact(args.byte, args.reply)
            if reply is None:
                return 1
            print(f"  RX: {reply.hex(' ') if reply else '(echo only)'}")
            return 0

        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except Exception as e:
        print(f"\n✗ Error: {e}")
        log.exception("CLI error")
        return 1
    finally:
        comm.close()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mems-link",
        description=f"{__app_name__} v{__version__} — {__target_ecu__} diagnostics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s read --port /dev/ttyUSB0                  # One telemetry snapshot
  %(prog)s read --port /dev/ttyUSB0 --count inf      # Stream until Ctrl+C
  %(prog)s read-raw --port COM3 --generation basic   # Raw 0x80 frame as CSV
  %(prog)s move-iac 0x40 --port /dev/ttyUSB0         # Position the IAC valve
  %(prog)s fuelpump --port /dev/ttyUSB0              # Run pump for 2 s
  %(prog)s send F4 --reply 1 --port /dev/ttyUSB0     # Raw command byte
  %(prog)s read --transport loopback                 # Virtual ECU
  %(prog)s ports                                     # List serial ports
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    read_p = subparsers.add_parser("read", help="Read decoded telemetry")
    read_raw_p = subparsers.add_parser("read-raw", help="Read raw data frames as CSV")
    for sub in (read_p, read_raw_p):
        sub.add_argument("--count", "-n", type=parse_count, default=1,
                         help="Number of reads, or 'inf' (default: 1)")

    move_p = subparsers.add_parser("move-iac", help="Move the IAC valve to a position")
    move_p.add_argument("target", type=lambda v: int(v, 0),
                        help=f"Target position 0..{IAC_MAXIMUM} (0x{IAC_MAXIMUM:02X})")

    send_p = subparsers.add_parser("send", help="Send a raw command byte")
    send_p.add_argument("byte", type=parse_byte, help="Command byte in hex, e.g. F4")
    send_p.add_argument("--reply", type=int, default=0,
                        help="Bytes to read after the echo (default: 0)")

    simple = [
        subparsers.add_parser("read-iac", help="Read IAC position"),
        subparsers.add_parser("iac-open", help="Open the IAC valve fully"),
        subparsers.add_parser("iac-close", help="Close the IAC valve fully"),
        subparsers.add_parser("fuelpump", help="Run the fuel pump briefly"),
        subparsers.add_parser("ptc", help="Cycle the manifold heater relay"),
        subparsers.add_parser("ac", help="Cycle the A/C relay"),
        subparsers.add_parser("coil", help="Fire the ignition coil"),
        subparsers.add_parser("injectors", help="Pulse the injectors"),
        subparsers.add_parser("clear-faults", help="Clear stored fault codes"),
        subparsers.add_parser("heartbeat", help="Ping the ECU"),
    ]

    subparsers.add_parser("ports", help="List available serial ports")

    # Connection options
    for sub in [read_p, read_raw_p, move_p, send_p] + simple:
        sub.add_argument("--port", "-p", default="/dev/ttyUSB0",
                         help="Serial port (default: /dev/ttyUSB0)")
        sub.add_argument("--transport", choices=["pyserial", "d2xx", "loopback"],
                         default="pyserial", help="Transport type (loopback = virtual ECU)")
        sub.add_argument("--generation", choices=[g.value for g in ProtocolGeneration],
                         default=ProtocolGeneration.EXTENDED.value,
                         help="basic = 0x80 frame only, extended = 0x80 + 0x7D")
        sub.add_argument("--units", choices=[u.value for u in UnitSystem],
                         help="Telemetry units (default depends on generation)")
        sub.add_argument("--timeout", type=int, default=DEFAULT_READ_TIMEOUT_MS,
                         help=f"Read timeout in ms (default: {DEFAULT_READ_TIMEOUT_MS})")
        sub.add_argument("--device-index", type=int, help="FTDI device index (for D2XX)")

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
