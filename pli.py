#!/usr/bin/env python3
"""
Steca/Plasmatronic PL solar regulator — Python API for the PLI link

Talks to the PL regulator's controller through a PLI (PL interface) over a
serial port. Every exchange is a fixed 4-byte frame
``command | location | data | checksum`` answered by at most two bytes.

Requires: pyserial (`pip install pyserial`)
"""

import argparse
import fcntl
import logging
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Callable, NamedTuple, Optional

import serial

logger = logging.getLogger(__name__)

VERSION = "0.1"

# ---------------------------------------------------------------------------
# Constants — frame layout
# ---------------------------------------------------------------------------
FRAME_SIZE = 4
RESPONSE_SIZE = 2
SUCCESS = 0xC8
TEST_OK = 0x80

# Command bytes
CMD_READ_REGISTER = 0x14
CMD_READ_EEPROM = 0x48
CMD_WRITE_REGISTER = 0x98
CMD_WRITE_EEPROM = 0xCA
CMD_PUSH = 0x57
CMD_TEST = 0xBB

PUSH_SHORT = 0x01
PUSH_LONG = 0x02

# Processor registers
REG_VERSION = 0x00
REG_VOLTAGE_DIV = 0x20
REG_DISPLAY_POWER = 0x29
REG_SECOND = 0x2E
REG_MINUTE = 0x2F  # minutes past the last 6-minute step
REG_HOUR = 0x30  # hour * 10 + minute / 6
REG_DAY = 0x31
REG_BATTERY_VOLTAGE = 0x32
REG_SOLAR_VOLTAGE = 0x35
REG_BATTERY_CAPACITY = 0x5E
REG_STATE = 0x65
REG_DISPLAY = 0x66
REG_CHARGE_EXTERNAL = 0xCD
REG_LOAD_EXTERNAL = 0xCE
REG_EXTERNAL_FLAGS = 0xCF
REG_CHARGE_INTERNAL = 0xD5
REG_LOAD_INTERNAL = 0xD9

# Display register values
DISPLAY_WAKE = 0x00
DISPLAY_SLEEP = 0x10
DISPLAY_DEFAULT = 0x00
DISPLAY_LSET = 0x17
DISPLAY_SOLV = 0x27

# External shunt range flags in REG_EXTERNAL_FLAGS
FLAG_CHARGE_RANGE = 0x01
FLAG_LOAD_RANGE = 0x02

# Configuration block (EEPROM, inclusive)
CONFIGURATION_START = 0x0E
CONFIGURATION_END = 0x2C
CONFIGURATION_SIZE = CONFIGURATION_END - CONFIGURATION_START + 1
CONFIGURATION_FILE = "solar.conf"

# Internal current divisors per regulator model: (charge, load)
MODELS = {
    "PL20": (10.0, 10.0),
    "PL40": (5.0, 10.0),
    "PL60": (2.5, 5.0),
}
DEFAULT_MODEL = "PL20"

# Timing
RETRY = 10
IO_WAIT = 10  # seconds before a read/write is abandoned
SETTLE_DELAY = 0.2  # PLI echoes the request if asked too early
MEASURE_DELAY = 3.0  # solar voltage display needs to stabilise
REPEAT = 3  # display writes are not acknowledged, so they are repeated

# Serial defaults
DEFAULT_DEVICE = "/dev/ttyUSB0"
DEFAULT_BAUD = 9600
BAUDRATES = (50, 75, 110, 134, 150, 200, 300, 600, 1200, 1800, 2400, 4800,
             9600, 19200, 38400, 57600, 115200, 230400)
LOCK_POLL = 0.1


# ---------------------------------------------------------------------------
# Status and errors
# ---------------------------------------------------------------------------
class Status(IntEnum):
    """Outcome of one command, used by the CLI as its exit code."""

    OK = 0
    USAGE = 1
    LOCAL_ERROR = 2
    COMMAND_FAILED = 3
    COMMUNICATION_ERROR = 4


class ErrorCode(IntEnum):
    """Error bytes the PLI sends in place of the success marker."""

    OTHER = 0x00
    TIMEOUT = 0x81
    CHECKSUM = 0x82
    UNRECOGNISED = 0x83
    NO_REPLY = 0x85
    REPLY_ERROR = 0x86

    @classmethod
    def from_byte(cls, value: int) -> "ErrorCode":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


ERROR_MESSAGES = {
    ErrorCode.TIMEOUT: "Command failed: timeout error.",
    ErrorCode.CHECKSUM: "Command failed: checksum error in PLI receive data.",
    ErrorCode.UNRECOGNISED: "Command failed: command received by PLI is not recognised.",
    ErrorCode.NO_REPLY: "Command failed: processor did not receive a reply to request.",
    ErrorCode.REPLY_ERROR: "Command failed: error in reply from PL.",
    ErrorCode.OTHER: "Command failed.",
}


class PLIError(Exception):
    """Base class; ``status`` says how the failure is reported."""

    status = Status.COMMAND_FAILED


class TransportError(PLIError):
    status = Status.COMMUNICATION_ERROR


class ChannelError(TransportError):
    """The serial port itself reported an error."""


class IncompleteTransfer(TransportError):
    """The retry budget ran out before the whole buffer went through."""


class TransferTimeout(TransportError):
    """A read or write did not finish within the wait interval."""


class ResponseError(PLIError):
    """The PLI answered with an error code."""

    def __init__(self, code: ErrorCode, raw: Optional[int] = None):
        self.code = code
        self.raw = int(code) if raw is None else raw
        super().__init__(ERROR_MESSAGES[code])


class CommandFailed(PLIError):
    """The exchange worked but the answer says the operation did not."""


class LocalError(PLIError):
    """Configuration file or system clock trouble on this side of the link."""

    status = Status.LOCAL_ERROR


# ---------------------------------------------------------------------------
# Frame codec
# ---------------------------------------------------------------------------
def build_frame(command: int, location: int = 0, data: int = 0) -> bytes:
    """Build a wire frame: command | location | data | command ^ 0xFF."""
    command &= 0xFF
    return bytes([command, location & 0xFF, data & 0xFF, command ^ 0xFF])


def decode_response(buf: bytes) -> int:
    """Return the data byte of a success response, raise ResponseError otherwise.

    A buffer too short to hold a response is reported as a generic failure.
    """
    if not buf:
        raise ResponseError(ErrorCode.OTHER)
    if buf[0] == SUCCESS:
        if len(buf) < RESPONSE_SIZE:
            raise ResponseError(ErrorCode.OTHER, raw=buf[0])
        return buf[1]
    raise ResponseError(ErrorCode.from_byte(buf[0]), raw=buf[0])


# ---------------------------------------------------------------------------
# Timeout guard
# ---------------------------------------------------------------------------
class TimeoutAction(Enum):
    FAIL = "fail"  # raise TransferTimeout, the caller decides
    EXIT = "exit"  # nothing sensible left to do, leave the process


class TimeoutGuard:
    """Deadline for one blocking call.

    Armed on ``__enter__`` and always disarmed on ``__exit__``, so an expired
    or pending timer never outlives the call it guards. When the deadline
    passes ``on_expire`` is invoked from the timer thread (to cancel pending
    serial I/O); the guarded code calls :meth:`check` to act on it.

    Usage::

        with TimeoutGuard(10, "Could not read response.") as guard:
            data = handle.read(n)
            guard.check()
    """

    def __init__(self, seconds: float, message: str,
                 action: TimeoutAction = TimeoutAction.FAIL,
                 on_expire: Optional[Callable[[], None]] = None):
        self.seconds = seconds
        self.message = message
        self.action = action
        self._on_expire = on_expire
        self._timer: Optional[threading.Timer] = None
        self._expired = threading.Event()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def armed(self) -> bool:
        return self._timer is not None

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def __enter__(self):
        self._expired.clear()
        self._closed = False
        self._timer = threading.Timer(self.seconds, self._fire)
        self._timer.daemon = True
        self._timer.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # a _fire already running finishes before we return, later ones do nothing
        with self._lock:
            self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer.join()
            self._timer = None
        return False

    def _fire(self):
        with self._lock:
            if self._closed:
                return
            self._expired.set()
            if self._on_expire is not None:
                try:
                    self._on_expire()
                except Exception as e:
                    logger.debug("Cancelling pending I/O failed: %s", e)

    def check(self):
        """Apply the configured action if the deadline has passed."""
        if not self._expired.is_set():
            return
        if self.action is TimeoutAction.EXIT:
            print(self.message, file=sys.stderr)
            raise SystemExit(int(Status.LOCAL_ERROR))
        raise TransferTimeout(self.message)


# ---------------------------------------------------------------------------
# Reliable channel
# ---------------------------------------------------------------------------
def _canceller(handle, name: str) -> Optional[Callable[[], None]]:
    return getattr(handle, name, None)


def write_all(handle, data: bytes, wait: float = IO_WAIT,
              settle: float = SETTLE_DELAY):
    """Write the whole buffer, retrying short writes.

    Only iterations that move nothing count against RETRY. After the write
    the PLI is given ``settle`` seconds before it is asked anything.
    """
    size = len(data)
    offset = 0
    retries = 0

    with TimeoutGuard(wait, "Timeout while writing command.",
                      on_expire=_canceller(handle, "cancel_write")) as guard:
        while offset < size:
            try:
                count = handle.write(data[offset:])
            except OSError as e:
                guard.check()
                raise ChannelError(f"Could not write command: {e}.") from e
            guard.check()

            count = count or 0
            offset += count
            if offset < size and count == 0:
                if retries >= RETRY:
                    raise IncompleteTransfer("Could not write complete command buffer.")
                retries += 1

    logger.debug("TX %s", data.hex(" "))
    time.sleep(settle)


def read_exact(handle, size: int, wait: float = IO_WAIT) -> bytes:
    """Read exactly ``size`` bytes, retrying short reads."""
    buf = bytearray()
    retries = 0

    with TimeoutGuard(wait, "Timeout while reading response.",
                      on_expire=_canceller(handle, "cancel_read")) as guard:
        while len(buf) < size:
            try:
                chunk = handle.read(size - len(buf))
            except OSError as e:
                guard.check()
                raise ChannelError(f"Could not read response: {e}.") from e
            guard.check()

            if chunk:
                buf += chunk
            elif retries >= RETRY:
                raise IncompleteTransfer("Could not read complete response buffer.")
            else:
                retries += 1

    logger.debug("RX %s", bytes(buf).hex(" "))
    return bytes(buf)


# ---------------------------------------------------------------------------
# Decoded values
# ---------------------------------------------------------------------------
class RegulatorState(Enum):
    BOOST = 0
    EQUALIZE = 1
    ABSORPTION = 2
    FLOAT = 3

    def __str__(self):
        return self.name.lower()


class DeviceTime(NamedTuple):
    hour: int
    minute: int
    second: int

    def __str__(self):
        return f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"


def decode_time(hour_code: int, minute_rest: int, second: int) -> DeviceTime:
    """The regulator keeps time in tenths of an hour plus leftover minutes."""
    return DeviceTime(hour_code // 10, (hour_code % 10) * 6 + minute_rest, second)


def encode_time(hour: int, minute: int, second: int) -> tuple[int, int, int]:
    """Inverse of :func:`decode_time`: (hour code, minute rest, seconds)."""
    return hour * 10 + minute // 6, minute % 6, second


def battery_capacity_ah(raw: int) -> int:
    # Two ranges: 20 Ah steps up to 1000 Ah, then 100 Ah steps starting over.
    if raw <= 50:
        return raw * 20
    return (raw - 50) * 100


def external_divisor(flags: int, mask: int) -> float:
    """External shunt reading scale: bit clear means tenths of an amp."""
    return 10.0 if (flags & mask) == 0 else 1.0


# ---------------------------------------------------------------------------
# PLI class
# ---------------------------------------------------------------------------
class PLI:
    """Register access and commands for a PL regulator behind a PLI.

    The handle must already be open and configured; this class neither opens
    nor closes it.

    Usage::

        handle = open_port("/dev/ttyUSB0")
        try:
            pli = PLI(handle, model="PL40")
            print(pli.battery_voltage())
        finally:
            handle.close()
    """

    def __init__(self, handle, model: str = DEFAULT_MODEL,
                 config_path: str = CONFIGURATION_FILE,
                 io_wait: float = IO_WAIT,
                 settle_delay: float = SETTLE_DELAY,
                 measure_delay: float = MEASURE_DELAY):
        if model not in MODELS:
            raise ValueError(
                f"Unknown model {model!r}, expected one of {', '.join(MODELS)}"
            )
        self._handle = handle
        self._model = model
        self._charge_div, self._load_div = MODELS[model]
        self.config_path = config_path
        self._io_wait = io_wait
        self._settle_delay = settle_delay
        self._measure_delay = measure_delay

    @property
    def model(self) -> str:
        return self._model

    # -- Low-level I/O -------------------------------------------------------

    def _send(self, command: int, location: int = 0, data: int = 0):
        write_all(self._handle, build_frame(command, location, data),
                  wait=self._io_wait, settle=self._settle_delay)

    def _recv(self, size: int) -> bytes:
        return read_exact(self._handle, size, wait=self._io_wait)

    def _read(self, command: int, location: int) -> int:
        self._send(command, location)
        return decode_response(self._recv(RESPONSE_SIZE))

    # -- Register access -----------------------------------------------------

    def read_register(self, location: int) -> int:
        """Read a live processor register."""
        return self._read(CMD_READ_REGISTER, location)

    def read_eeprom(self, location: int) -> int:
        """Read a persisted EEPROM cell."""
        return self._read(CMD_READ_EEPROM, location)

    def write_register(self, location: int, value: int):
        self._send(CMD_WRITE_REGISTER, location, value)

    def write_eeprom(self, location: int, value: int):
        self._send(CMD_WRITE_EEPROM, location, value)

    def short_push(self):
        """Simulate a short press of the regulator's button."""
        self._send(CMD_PUSH, PUSH_SHORT)

    def long_push(self):
        """Simulate a long press of the regulator's button."""
        self._send(CMD_PUSH, PUSH_LONG)

    def _repeat_write(self, location: int, value: int):
        for _ in range(REPEAT):
            self.write_register(location, value)

    def _wake_display(self):
        self._repeat_write(REG_DISPLAY_POWER, DISPLAY_WAKE)

    def _sleep_display(self):
        self._repeat_write(REG_DISPLAY_POWER, DISPLAY_SLEEP)

    # -- Commands ------------------------------------------------------------

    def test(self) -> bool:
        """Loopback test of the PLI itself."""
        self._send(CMD_TEST)
        return self._recv(1)[0] == TEST_OK

    def version(self) -> int:
        """PL software version."""
        return self.read_register(REG_VERSION)

    def day(self) -> int:
        """Day counter kept by the regulator."""
        return self.read_register(REG_DAY)

    def time(self) -> DeviceTime:
        hour_code = self.read_register(REG_HOUR)
        minute_rest = self.read_register(REG_MINUTE)
        second = self.read_register(REG_SECOND)
        return decode_time(hour_code, minute_rest, second)

    def set_day_time(self, now: Optional[datetime] = None) -> datetime:
        """Set the regulator's day and time from local time (or ``now``)."""
        if now is None:
            try:
                now = datetime.now()
            except (OSError, OverflowError) as e:
                raise LocalError(f"Could not get local time: {e}.") from e

        hour_code, minute_rest, second = encode_time(now.hour, now.minute, now.second)
        self.write_register(REG_DAY, now.day - 1)
        self.write_register(REG_HOUR, hour_code)
        self.write_register(REG_MINUTE, minute_rest)
        self.write_register(REG_SECOND, second)
        return now

    def battery_capacity(self) -> int:
        """Configured battery capacity in Ah."""
        return battery_capacity_ah(self.read_register(REG_BATTERY_CAPACITY))

    def battery_voltage(self) -> float:
        divisor = self.read_register(REG_VOLTAGE_DIV)
        raw = self.read_register(REG_BATTERY_VOLTAGE)
        return raw * (divisor + 1) / 10.0

    def solar_voltage(self) -> float:
        """Solar voltage, read through the regulator's display channel.

        The display is woken, switched to the solar voltage reading and left
        to settle before the value is read, then restored and put back to
        sleep.
        """
        self._wake_display()
        self.write_register(REG_DISPLAY, DISPLAY_SOLV)

        time.sleep(self._measure_delay)

        raw = self.read_register(REG_SOLAR_VOLTAGE)

        self.write_register(REG_DISPLAY, DISPLAY_DEFAULT)
        self._sleep_display()

        return raw / 2.0

    def _current(self, internal_reg: int, external_reg: int, mask: int,
                 internal_div: float) -> float:
        internal = self.read_register(internal_reg)
        external = self.read_register(external_reg)
        flags = self.read_register(REG_EXTERNAL_FLAGS)
        return internal / internal_div + external / external_divisor(flags, mask)

    def charge_current(self) -> float:
        """Charging current in A, internal plus external shunt."""
        return self._current(REG_CHARGE_INTERNAL, REG_CHARGE_EXTERNAL,
                             FLAG_CHARGE_RANGE, self._charge_div)

    def load_current(self) -> float:
        """Load current in A, internal plus external shunt."""
        return self._current(REG_LOAD_INTERNAL, REG_LOAD_EXTERNAL,
                             FLAG_LOAD_RANGE, self._load_div)

    def state(self) -> RegulatorState:
        return RegulatorState(self.read_register(REG_STATE) & 0x03)

    def read_configuration(self) -> bytes:
        """Read the whole configuration block from EEPROM."""
        return bytes(
            self.read_eeprom(location)
            for location in range(CONFIGURATION_START, CONFIGURATION_END + 1)
        )

    def write_configuration(self, block: bytes):
        """Write a configuration block back to EEPROM, in address order.

        Not atomic: a failure part way leaves the regulator with a mix of old
        and new settings.
        """
        if len(block) != CONFIGURATION_SIZE:
            raise ValueError(
                f"Configuration block must be {CONFIGURATION_SIZE} bytes, got {len(block)}"
            )
        for offset, value in enumerate(block):
            self.write_eeprom(CONFIGURATION_START + offset, value)

    def save(self, path: Optional[str] = None) -> bytes:
        """Save the configuration block to a file (overwritten).

        Every cell is read before the file is touched, so a failed read
        leaves any previous file intact.
        """
        path = path or self.config_path
        block = self.read_configuration()
        try:
            with open(path, "wb") as f:
                f.write(block)
        except OSError as e:
            raise LocalError(
                f"Could not write configuration file '{path}': {e.strerror or e}."
            ) from e
        logger.info("Saved %d configuration bytes to %s", len(block), path)
        return block

    def restore(self, path: Optional[str] = None) -> bytes:
        """Restore the configuration block from a file saved by :meth:`save`."""
        path = path or self.config_path
        try:
            with open(path, "rb") as f:
                block = f.read(CONFIGURATION_SIZE + 1)
        except OSError as e:
            raise LocalError(
                f"Could not read configuration file '{path}': {e.strerror or e}."
            ) from e
        if len(block) != CONFIGURATION_SIZE:
            raise LocalError(
                f"Configuration file '{path}' must be {CONFIGURATION_SIZE} bytes long."
            )

        self.write_configuration(block)
        logger.info("Restored %d configuration bytes from %s", len(block), path)
        return block

    def power_cycle(self) -> bool:
        """Switch the load off; the regulator turns it back on after LDEL.

        Only works while battery voltage is above LON. If this host is
        powered from the regulator's load output it will usually lose power
        before the display is put back to sleep; that is reported by
        returning False rather than raising.
        """
        self._wake_display()
        self.write_register(REG_DISPLAY, DISPLAY_LSET)
        self.long_push()

        try:
            self._sleep_display()
        except TransportError as e:
            logger.info("Display sleep after power cycle not delivered: %s", e)
            return False
        return True


# ---------------------------------------------------------------------------
# Command table
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Reading:
    """Printable result of a command."""

    label: str
    text: str = ""

    def format(self, plain: bool = False) -> str:
        if not self.text:
            return "" if plain else self.label
        return self.text if plain else f"{self.label}: {self.text}"


@dataclass(frozen=True)
class Command:
    name: str
    description: str
    run: Callable[[PLI], Optional[Reading]]


def _test(pli: PLI) -> Reading:
    if not pli.test():
        raise CommandFailed("Test failed.")
    return Reading("Test successful.")


def _set_day_time(pli: PLI) -> None:
    pli.set_day_time()


def _save(pli: PLI) -> None:
    pli.save()


def _restore(pli: PLI) -> None:
    pli.restore()


def _power_cycle(pli: PLI) -> None:
    pli.power_cycle()


COMMANDS = {c.name: c for c in (
    Command("test", "loopback test connection to PLI", _test),
    Command("plversion", "get PL software version",
            lambda pli: Reading("Version", str(pli.version()))),
    Command("getday", "get current day in a month",
            lambda pli: Reading("Day", str(pli.day()))),
    Command("gettime", "get current time",
            lambda pli: Reading("Time", str(pli.time()))),
    Command("setdaytime", "set current day and time from local time on this system",
            _set_day_time),
    Command("batcapacity", "get battery capacity configuration",
            lambda pli: Reading("Battery capacity (Ah)", str(pli.battery_capacity()))),
    Command("batvoltage", "get current battery voltage",
            lambda pli: Reading("Battery voltage (V)", f"{pli.battery_voltage():.1f}")),
    Command("solvoltage", "get current solar voltage",
            lambda pli: Reading("Solar voltage (V)", f"{pli.solar_voltage():.1f}")),
    Command("charge", "get current charging current",
            lambda pli: Reading("Charging current (A)", f"{pli.charge_current():.1f}")),
    Command("load", "get current load current",
            lambda pli: Reading("Load current (A)", f"{pli.load_current():.1f}")),
    Command("state", "get current regulator state",
            lambda pli: Reading("Regulator state", str(pli.state()))),
    Command("save", "save current configuration to a file (default 'solar.conf')",
            _save),
    Command("restore", "restore configuration from a file (default 'solar.conf')",
            _restore),
    Command("powercycle", "switch power off to be (possibly) turned automatically back on",
            _power_cycle),
)}


def execute(pli: PLI, name: str, plain: bool = False,
            out=None, err=None) -> Status:
    """Run one command by name and print its result.

    Results go to ``out``, diagnostics to ``err``. In plain mode only values
    are printed, and protocol or logical failures stay quiet; transport and
    local failures are always reported.
    """
    out = out or sys.stdout
    err = err or sys.stderr
    command = COMMANDS[name]

    try:
        reading = command.run(pli)
    except (ResponseError, CommandFailed) as e:
        logger.debug("%s: %s", name, e)
        if not plain:
            print(e, file=err)
        return e.status
    except PLIError as e:
        logger.debug("%s: %s", name, e)
        print(e, file=err)
        return e.status

    if reading is not None:
        text = reading.format(plain)
        if text:
            print(text, file=out)
    return Status.OK


# ---------------------------------------------------------------------------
# Serial port
# ---------------------------------------------------------------------------
def open_port(device: str = DEFAULT_DEVICE, baud: int = DEFAULT_BAUD,
              wait: float = IO_WAIT,
              on_timeout: TimeoutAction = TimeoutAction.EXIT) -> serial.Serial:
    """Open the serial port raw, 8N1 with RTS/CTS, and lock it exclusively.

    Waits up to ``wait`` seconds for another process to release the lock;
    ``on_timeout`` decides whether that ends the process or raises.
    """
    ser = serial.Serial(
        device, baud,
        bytesize=serial.EIGHTBITS, parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        rtscts=True, timeout=1, write_timeout=1,
    )
    try:
        with TimeoutGuard(wait,
                          f"Timeout while waiting for serial port device file '{device}'.",
                          action=on_timeout) as guard:
            while True:
                try:
                    fcntl.flock(ser.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    guard.check()
                    time.sleep(LOCK_POLL)
    except BaseException:
        ser.close()
        raise
    logger.debug("Opened %s at %d baud", device, baud)
    return ser


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _print_help(parser: argparse.ArgumentParser, plain: bool, file=None):
    file = file or sys.stdout
    if plain:
        for name in ("help", "version", *COMMANDS):
            print(name, file=file)
        return
    parser.print_help(file=file)


class _Parser(argparse.ArgumentParser):
    """argparse, but a bad command line exits with Status.USAGE."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(int(Status.USAGE), f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    width = max(len(name) for name in COMMANDS)
    lines = [
        f"  {'help':<{width}}  display this help",
        f"  {'version':<{width}}  display version of this program, that is {VERSION}",
    ]
    lines += [f"  {c.name:<{width}}  {c.description}" for c in COMMANDS.values()]

    parser = _Parser(
        prog="solar",
        description="Steca/Plasmatronic PL regulator over PLI",
        epilog="commands:\n" + "\n".join(lines),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-p", "--plain", action="store_true",
                        help="plain (just values) output")
    parser.add_argument("-d", "--device", default=DEFAULT_DEVICE,
                        help="serial port device file (default: %(default)s)")
    parser.add_argument("-b", "--baud", type=int, default=DEFAULT_BAUD,
                        choices=BAUDRATES, metavar="BAUD",
                        help="baud rate (default: %(default)s)")
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL, choices=sorted(MODELS),
                        help="regulator model, sets current scaling (default: %(default)s)")
    parser.add_argument("-f", "--file", default=CONFIGURATION_FILE,
                        help="configuration file for save/restore (default: %(default)s)")
    parser.add_argument("-w", "--wait", type=float, default=IO_WAIT,
                        help="seconds to wait for the port and each transfer "
                             "(default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log protocol traffic to stderr")
    parser.add_argument("command", choices=["help", "version", *COMMANDS],
                        metavar="command")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    if args.command == "help":
        _print_help(parser, args.plain)
        return Status.OK
    if args.command == "version":
        print(("" if args.plain else "Version: ") + VERSION)
        return Status.OK

    try:
        handle = open_port(args.device, args.baud, wait=args.wait)
    except (serial.SerialException, OSError) as e:
        print(f"Could not open serial port device file '{args.device}': {e}.",
              file=sys.stderr)
        return Status.LOCAL_ERROR

    try:
        pli = PLI(handle, model=args.model, config_path=args.file, io_wait=args.wait)
        status = execute(pli, args.command, plain=args.plain)
    finally:
        handle.close()
    return status


if __name__ == "__main__":
    sys.exit(main())
