"""Shared fixtures for KD3005P tests."""

from unittest.mock import MagicMock, patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from korad import KoradPSU

IDN_LINE = b"KORAD KD3005P V6.6 SN:01206303\n"


@pytest.fixture
def no_sleep():
    """Patch out the settle delay and record every requested wait."""
    with patch("korad.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def fake_serial():
    """A mocked serial.Serial instance.

    - readline answers *IDN? with a valid KD3005P identity by default;
      tests append more replies by reassigning readline.side_effect
    - serial.Serial() itself is patched to return this instance
    """
    ser = MagicMock()
    ser.is_open = True
    ser.port = "/dev/fake"
    ser.readline.side_effect = [IDN_LINE]
    with patch("korad.serial.Serial", return_value=ser) as cls:
        ser.serial_class = cls
        yield ser


@pytest.fixture
def psu(fake_serial, no_sleep):
    """A connected, identified KoradPSU with the connect traffic cleared."""
    psu = KoradPSU("/dev/fake")
    psu.connect()
    fake_serial.write.reset_mock()
    fake_serial.readline.reset_mock()
    no_sleep.reset_mock()
    return psu


@pytest.fixture
def events(fake_serial, no_sleep):
    """Interleaved log of ("write", data) and ("sleep", seconds) calls."""
    log = []
    fake_serial.write.side_effect = lambda data: log.append(("write", data))
    no_sleep.side_effect = lambda secs: log.append(("sleep", secs))
    return log


def written(ser) -> list:
    """All byte strings written to a mocked serial port, in order."""
    return [c.args[0] for c in ser.write.call_args_list]
