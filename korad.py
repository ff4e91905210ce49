#!/usr/bin/env python3
"""
KORAD KD3005P Power Supply: Python API

Talks to the KD3005P over its USB serial port using the plain ASCII protocol:
one newline-terminated command per write, one newline-terminated line back
for queries. Setting commands get no reply; the firmware needs a short settle
time after each one before it reports the new state.

Requires: pyserial (`pip install pyserial`)
"""

import logging
import sys
import time
from typing import NamedTuple, Optional

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_PORT = "COM3" if sys.platform == "win32" else "/dev/ttyACM0"
DEFAULT_BAUD = 9600  # ignored by the CDC-ACM device, kept for USB-serial adapters

# Post-write settle time for setting commands
SETTLE_DELAY = 0.05  # 50 ms

# Identity markers of the supported firmware
EXPECTED_VENDOR = "KORAD"
EXPECTED_MODEL = "KD3005P"
EXPECTED_FIRMWARE = "V6.6"
SERIAL_PREFIX = "SN:"

# Device limits
MAX_VOLTAGE = 30.0
MAX_CURRENT = 5.0
MEMORY_SLOTS = range(1, 6)

# Command templates
CMD_IDENTIFY = "*IDN?"
CMD_STATUS = "STATUS?"
CMD_SET_CURRENT = "ISET1:{}"
CMD_SET_VOLTAGE = "VSET1:{}"
CMD_OUTPUT = "OUT{}"
CMD_OCP = "OCP{}"
CMD_SAVE = "SAV{}"
CMD_RECALL = "RCL{}"
CMD_GET_VOLTAGE_SET = "VSET1?"
CMD_GET_CURRENT_SET = "ISET1?"
CMD_GET_VOLTAGE_OUT = "VOUT1?"
CMD_GET_CURRENT_OUT = "IOUT1?"

# STATUS? bit meanings
STATUS_CV_MODE = 0x01  # otherwise CC mode
STATUS_OCP = 0x20  # undocumented
STATUS_OUTPUT = 0x40

# Exit statuses
EXIT_OK = 0
EXIT_USAGE = 1
EXIT_COMM = 2


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class KoradError(Exception):
    """Base class for every failure raised by this module."""

    exit_status = EXIT_COMM


class CommunicationError(KoradError):
    """The serial channel failed; the device may be half-configured."""

    exit_status = EXIT_COMM


class DeviceOpenFailed(CommunicationError):
    pass


class WriteFailed(CommunicationError):
    pass


class ReadFailed(CommunicationError):
    pass


class EndOfStream(ReadFailed):
    pass


class UnrecognizedDevice(KoradError):
    """The identification string does not match the supported device."""

    exit_status = EXIT_USAGE

    def __init__(self, identity: str):
        super().__init__(
            f"device identified as '{identity}'. Unknown, aborting."
        )
        self.identity = identity


# ---------------------------------------------------------------------------
# Codec helpers
# ---------------------------------------------------------------------------
def build_command(template: str, *args) -> bytes:
    """Substitute args into a command template and append the LF terminator."""
    return (template.format(*args) + "\n").encode("ascii")


def settle_time(command: str) -> float:
    """Seconds to wait after writing command.

    Queries are read back immediately; every other command mutates the device
    and needs SETTLE_DELAY before its effect is visible.
    """
    return 0.0 if command.rstrip().endswith("?") else SETTLE_DELAY


def strip_line(raw: bytes) -> bytes:
    """Drop all trailing CR/LF characters from a response line."""
    return raw.rstrip(b"\r\n")


def decode_status(status: int) -> dict:
    """Decode the STATUS? byte.

    Reserved bits are left in "status" untouched and not interpreted.
    """
    status &= 0xFF
    cv_mode = bool(status & STATUS_CV_MODE)
    return {
        "status": status,
        "cv_mode": cv_mode,
        "mode": "CV" if cv_mode else "CC",
        "ocp_on": bool(status & STATUS_OCP),
        "output_on": bool(status & STATUS_OUTPUT),
    }


def format_voltage(volts: float) -> str:
    """Range-check a voltage and render it the way VSET1 expects (xx.xx)."""
    if not 0 <= volts <= MAX_VOLTAGE:
        raise ValueError(
            f"Voltage {volts:.3f}V out of range [0, {MAX_VOLTAGE:.1f}V]"
        )
    return f"{volts:.2f}"


def format_current(amps: float) -> str:
    """Range-check a current and render it the way ISET1 expects (x.xxx)."""
    if not 0 <= amps <= MAX_CURRENT:
        raise ValueError(
            f"Current {amps:.3f}A out of range [0, {MAX_CURRENT:.1f}A]"
        )
    return f"{amps:.3f}"


def check_slot(slot: int) -> int:
    if isinstance(slot, bool) or not isinstance(slot, int) or slot not in MEMORY_SLOTS:
        raise ValueError(
            f"Memory slot must be {MEMORY_SLOTS.start}-{MEMORY_SLOTS.stop - 1}, got {slot}"
        )
    return slot


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------
class Identity(NamedTuple):
    vendor: str
    model: str
    firmware: str
    serial: str
    raw: str = ""


def parse_identity(text: str) -> list[str]:
    """Split an *IDN? reply into its space-separated tokens."""
    return [tok for tok in text.split(" ") if tok]


def validate_identity(
    text: str,
    force: bool = False,
    vendor: str = EXPECTED_VENDOR,
    model: str = EXPECTED_MODEL,
    firmware: str = EXPECTED_FIRMWARE,
    serial_prefix: str = SERIAL_PREFIX,
) -> Identity:
    """Check an *IDN? reply against the expected device markers.

    The reply must read "<vendor> <model> <firmware> SN:<serial>". A reply
    with fewer than four tokens never matches. With force=True mismatches
    are accepted and missing tokens come back as empty strings.

    Raises:
        UnrecognizedDevice: on mismatch when force is False.
    """
    toks = parse_identity(text)
    matches = (
        len(toks) >= 4
        and toks[0] == vendor
        and toks[1] == model
        and toks[2] == firmware
        and toks[3].startswith(serial_prefix)
    )
    if not matches:
        if not force:
            raise UnrecognizedDevice(text)
        logger.warning("Accepting unrecognized device '%s'", text)

    toks += [""] * (4 - len(toks))
    return Identity(toks[0], toks[1], toks[2], toks[3], text)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class SerialTransport:
    """Blocking line-oriented channel to the serial device.

    Reads have no timeout: a device that never answers blocks read_line
    forever.
    """

    def __init__(self, baud: int = DEFAULT_BAUD):
        self._baud = baud
        self._ser: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self, path: str):
        """Open path read/write without making it our controlling terminal."""
        if self._ser is not None:
            raise RuntimeError(f"Transport already open on {self._ser.port}")
        logger.info("Opening %s", path)
        try:
            # The POSIX backend opens with O_RDWR | O_NOCTTY.
            self._ser = serial.Serial(path, self._baud, timeout=None)
        except (serial.SerialException, OSError) as exc:
            raise DeviceOpenFailed(f"{path}: {exc}") from exc

    def close(self):
        if self._ser is not None and self._ser.is_open:
            self._ser.close()
            logger.info("Closed %s", self._ser.port)
        self._ser = None

    def write_line(self, data: bytes):
        try:
            self._ser.write(data)
            self._ser.flush()
        except (serial.SerialException, OSError) as exc:
            raise WriteFailed(str(exc)) from exc

    def read_line(self) -> bytes:
        """Read up to and including the next LF."""
        try:
            line = self._ser.readline()
        except (serial.SerialException, OSError) as exc:
            raise ReadFailed(str(exc)) from exc
        if not line:
            raise EndOfStream("end of stream")
        return line


# ---------------------------------------------------------------------------
# KoradPSU class
# ---------------------------------------------------------------------------
class KoradPSU:
    """Python API for the KORAD KD3005P programmable power supply.

    Usage::

        with KoradPSU("/dev/ttyACM0") as psu:
            psu.configure(voltage="5.00", current="1.000", output=True)
            print(psu.read_report())
    """

    def __init__(
        self,
        port: str = DEFAULT_PORT,
        baud: int = DEFAULT_BAUD,
        force: bool = False,
        transport: Optional[SerialTransport] = None,
    ):
        self._port = port
        self._force = force
        self._transport = transport if transport is not None else SerialTransport(baud)
        self._identity: Optional[Identity] = None
        self._closed = False

    # -- Properties ----------------------------------------------------------

    @property
    def port(self) -> str:
        return self._port

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Low-level I/O -------------------------------------------------------

    def _require_open(self) -> SerialTransport:
        if self._closed or not self._transport.is_open:
            raise RuntimeError("Session is not open. Call connect() first.")
        return self._transport

    def _require_identified(self) -> SerialTransport:
        transport = self._require_open()
        if self._identity is None:
            raise RuntimeError("Device not identified. Call connect() first.")
        return transport

    def _write(self, transport: SerialTransport, template: str, *args):
        command = template.format(*args)
        logger.debug("TX: %s", command)
        try:
            transport.write_line(build_command(template, *args))
        except WriteFailed as exc:
            raise WriteFailed(f"error writing {command}: {exc}") from exc
        wait = settle_time(command)
        if wait:
            logger.debug("settle %.3fs", wait)
            time.sleep(wait)

    def _send(self, template: str, *args):
        """Send a setting command and wait the settle delay."""
        self._write(self._require_identified(), template, *args)

    def _recv_raw(self, transport: SerialTransport, command: str) -> bytes:
        try:
            raw = transport.read_line()
        except ReadFailed as exc:
            raise type(exc)(f"error reading {command} output: {exc}") from exc
        logger.debug("RX: %r", raw)
        return raw

    def _send_and_recv(self, command: str, transport: Optional[SerialTransport] = None) -> str:
        """Send a query and return its reply line without CR/LF."""
        if transport is None:
            transport = self._require_identified()
        self._write(transport, command)
        return strip_line(self._recv_raw(transport, command)).decode(
            "ascii", errors="replace"
        )

    # -- Connection lifecycle ------------------------------------------------

    def connect(self) -> Identity:
        """Open the serial port and identify the device.

        *IDN? is sent exactly once per session.

        Raises:
            DeviceOpenFailed: the port could not be opened.
            UnrecognizedDevice: identity mismatch and force is off.
        """
        if self._closed:
            raise RuntimeError("Session is closed.")
        if self._identity is not None or self._transport.is_open:
            raise RuntimeError("Already connected.")
        self._transport.open(self._port)
        try:
            reply = self._send_and_recv(CMD_IDENTIFY, self._require_open())
            self._identity = validate_identity(reply, force=self._force)
        except Exception:
            self.close()
            raise
        logger.info("Device identified as %s", reply)
        return self._identity

    def close(self):
        """Release the serial port. The output state is left as it is."""
        self._transport.close()
        self._closed = True

    # -- Configuration -------------------------------------------------------

    def set_current(self, amps: str):
        """Set the current limit; amps is pre-formatted text such as "1.000"."""
        self._send(CMD_SET_CURRENT, amps)

    def set_voltage(self, volts: str):
        """Set the voltage limit; volts is pre-formatted text such as "5.00"."""
        self._send(CMD_SET_VOLTAGE, volts)

    def set_output(self, enabled: bool):
        self._send(CMD_OUTPUT, int(bool(enabled)))

    def output_on(self):
        self.set_output(True)

    def output_off(self):
        self.set_output(False)

    def set_ocp(self, enabled: bool):
        self._send(CMD_OCP, int(bool(enabled)))

    def save(self, slot: int):
        """Store the current V/I settings in memory slot 1-5."""
        self._send(CMD_SAVE, check_slot(slot))

    def recall(self, slot: int):
        """Restore V/I settings from memory slot 1-5."""
        self._send(CMD_RECALL, check_slot(slot))

    def configure(
        self,
        current: Optional[str] = None,
        voltage: Optional[str] = None,
        output: Optional[bool] = None,
        ocp: Optional[bool] = None,
        save: Optional[int] = None,
        recall: Optional[int] = None,
    ):
        """Apply the requested settings in a fixed order.

        Limits go first so a save in the same call stores them, and the
        recall comes last so it overrides everything else sent here. Settings
        left as None are not sent. Nothing is rolled back if a later command
        fails.
        """
        if current is not None:
            self.set_current(current)
        if voltage is not None:
            self.set_voltage(voltage)
        if output is not None:
            self.set_output(output)
        if ocp is not None:
            self.set_ocp(ocp)
        if save is not None:
            self.save(save)
        if recall is not None:
            self.recall(recall)

    # -- Status --------------------------------------------------------------

    def read_status(self) -> dict:
        """Query STATUS? and decode its first byte."""
        transport = self._require_identified()
        self._write(transport, CMD_STATUS)
        # The reply is a raw byte, which may itself be CR or LF
        raw = self._recv_raw(transport, CMD_STATUS)
        return decode_status(raw[0])

    def read_report(self) -> dict:
        """Read status, set points and actual output in one go.

        Five separate round trips, so the values are not an atomic snapshot.
        """
        report = self.read_status()
        report["voltage_setpoint"] = self._send_and_recv(CMD_GET_VOLTAGE_SET)
        report["current_setpoint"] = self._send_and_recv(CMD_GET_CURRENT_SET)
        report["output_voltage"] = self._send_and_recv(CMD_GET_VOLTAGE_OUT)
        report["output_current"] = self._send_and_recv(CMD_GET_CURRENT_OUT)
        return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
CSI = "\x1b["
RED = CSI + "91m"
GREEN = CSI + "92m"
MAGENTA = CSI + "95m"
CYAN = CSI + "96m"
RESET = CSI + "0m"


def format_report(report: dict, color: bool = False) -> str:
    """Render a read_report() dict as a single status line."""
    if color:
        on, off = GREEN + "on" + RESET, RED + "off" + RESET
        ufmt, ifmt, reset = MAGENTA, CYAN, RESET
    else:
        on, off = "on", "off"
        ufmt = ifmt = reset = ""

    cv = report["cv_mode"]
    return (
        f"constant {ufmt if cv else ifmt}{'voltage' if cv else 'current'}{reset} mode, "
        f"ocp {on if report['ocp_on'] else off}, "
        f"output {on if report['output_on'] else off} (0x{report['status']:02x})"
        f", set to {ufmt}{report['voltage_setpoint']}{reset}V"
        f" / {ifmt}{report['current_setpoint']}{reset}A"
        f", actual output: {ufmt}{report['output_voltage']}{reset}V"
        f" / {ifmt}{report['output_current']}{reset}A"
    )


def _cli(argv=None) -> int:
    import argparse

    class _Parser(argparse.ArgumentParser):
        def error(self, message):
            self.print_usage(sys.stderr)
            self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")

    def _arg(fmt):
        def convert(text):
            try:
                return fmt(float(text))
            except ValueError as e:
                raise argparse.ArgumentTypeError(str(e))
        return convert

    parser = _Parser(
        prog="korad",
        description="KORAD KD3005P command-line interface",
        epilog="Exit status: 0 ok, 1 usage error or unknown device, "
               "2 device or communication failure.",
    )
    parser.add_argument(
        "-f", "--force", action="store_true",
        help="use the device even if its identity does not match",
    )
    parser.add_argument("-s", "--status", action="store_true", help="print status")
    parser.add_argument(
        "-v", "--version", action="store_true", help="print version information",
    )
    parser.add_argument(
        "-D", "--device", default=DEFAULT_PORT, metavar="DEV",
        help="use device path DEV (default: %(default)s)",
    )
    parser.add_argument(
        "-I", "--current", type=_arg(format_current), metavar="x.xxx",
        help="set maximum output current in Ampere",
    )
    parser.add_argument(
        "-U", "--voltage", type=_arg(format_voltage), metavar="xx.xx",
        help="set maximum output voltage in Volt",
    )
    parser.add_argument(
        "-o", "--output", choices=["0", "1"], help="turn output off or on",
    )
    parser.add_argument(
        "-O", "--ocp", choices=["0", "1"],
        help="turn over-current protection off or on",
    )
    parser.add_argument(
        "-S", "--save", type=int, choices=MEMORY_SLOTS, metavar="{1-5}",
        help="store current U/I settings in memory slot",
    )
    parser.add_argument(
        "-R", "--recall", type=int, choices=MEMORY_SLOTS, metavar="{1-5}",
        help="restore U/I settings from memory slot",
    )
    parser.add_argument("--debug", action="store_true", help="log serial traffic")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        with KoradPSU(args.device, force=args.force) as psu:
            if args.version:
                print(f"device identified as: {psu.identity.raw}")

            psu.configure(
                current=args.current,
                voltage=args.voltage,
                output=None if args.output is None else args.output == "1",
                ocp=None if args.ocp is None else args.ocp == "1",
                save=args.save,
                recall=args.recall,
            )

            if args.status:
                report = psu.read_report()
                print(format_report(report, color=sys.stdout.isatty()))

    except UnrecognizedDevice as e:
        if args.version:
            print(f"device identified as: {e.identity}")
        print(f"error: {e} Use -f to override.", file=sys.stderr)
        return e.exit_status
    except KoradError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_status

    return EXIT_OK


def main():
    sys.exit(_cli())


if __name__ == "__main__":
    main()
