#!/usr/bin/env python3
"""
KORAD KD3005P MCP Server

Exposes the KD3005P power supply as MCP tools for LLM-driven control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python korad_mcp.py                      # stdio transport (default)

Or register it with an MCP client:
    {
        "mcpServers": {
            "korad": {
                "command": "python3",
                "args": ["korad_mcp.py"]
            }
        }
    }
"""

import json
from typing import Optional

from fastmcp import FastMCP

from korad import (
    DEFAULT_PORT,
    KoradPSU,
    check_slot,
    format_current,
    format_voltage,
)

mcp = FastMCP(
    "KORAD KD3005P Power Supply",
    instructions=(
        "Controls a KORAD KD3005P programmable DC power supply via USB serial. "
        "The KD3005P outputs 0-30V at 0-5A. Always connect() first, then use "
        "other tools. Voltage and current values are range-checked before "
        "they are sent. Settings are applied immediately and are not rolled "
        "back. disconnect() leaves the output in its current state."
    ),
)

# Global device handle, one connection at a time
_psu: Optional[KoradPSU] = None


def _require_connection() -> KoradPSU:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _identity_json(psu: KoradPSU) -> dict:
    ident = psu.identity
    return {
        "vendor": ident.vendor,
        "model": ident.model,
        "firmware": ident.firmware,
        "serial": ident.serial,
        "raw": ident.raw,
    }


def _reading(text: str):
    """Numeric readback as float, or the raw text if the device sent junk."""
    try:
        return float(text)
    except ValueError:
        return text


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(port: str = DEFAULT_PORT, force: bool = False) -> str:
    """Connect to the KD3005P power supply.

    Opens the serial port and checks the *IDN? reply against the supported
    vendor, model and firmware.

    Args:
        port: Serial port path, e.g. "/dev/ttyACM0" (Linux) or "COM3" (Windows).
        force: Accept the device even if its identity does not match.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    psu = KoradPSU(port, force=force)
    psu.connect()
    _psu = psu

    return json.dumps({"status": "connected", **_identity_json(psu)})


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the KD3005P power supply.

    Releases the serial port. The output keeps running with its current
    settings.
    """
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    _psu.close()
    _psu = None
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def identify() -> str:
    """Return the identity the device reported when connecting."""
    psu = _require_connection()
    return json.dumps(_identity_json(psu))


@mcp.tool()
def read_status() -> str:
    """Read the status byte, set points and actual output.

    Returns CV/CC mode, OCP and output state, the raw status byte, the
    voltage/current set points and the measured output voltage/current.
    The values come from five separate queries.
    """
    psu = _require_connection()
    report = psu.read_report()
    for key in ["voltage_setpoint", "current_setpoint",
                "output_voltage", "output_current"]:
        report[key] = _reading(report[key])
    return json.dumps(report)


@mcp.tool()
def set_voltage(volts: float) -> str:
    """Set the voltage limit on the KD3005P.

    Sends VSET1. This only changes the limit; it does not enable the output.

    Args:
        volts: Desired voltage in volts (0 to 30).
    """
    psu = _require_connection()
    value = format_voltage(volts)
    psu.set_voltage(value)
    return json.dumps({"status": "ok", "voltage_setpoint": value})


@mcp.tool()
def set_current(amps: float) -> str:
    """Set the current limit on the KD3005P.

    Sends ISET1. This only changes the limit; it does not enable the output.

    Args:
        amps: Desired current limit in amps (0 to 5).
    """
    psu = _require_connection()
    value = format_current(amps)
    psu.set_current(value)
    return json.dumps({"status": "ok", "current_setpoint": value})


@mcp.tool()
def output_on() -> str:
    """Enable the KD3005P output with the configured limits."""
    psu = _require_connection()
    psu.output_on()
    return json.dumps({"status": "ok", "output": "on"})


@mcp.tool()
def output_off() -> str:
    """Disable the KD3005P output. The limits are preserved."""
    psu = _require_connection()
    psu.output_off()
    return json.dumps({"status": "ok", "output": "off"})


@mcp.tool()
def set_ocp(enabled: bool) -> str:
    """Turn over-current protection on or off.

    With OCP on, the device cuts the output when the current limit is hit
    instead of switching to constant-current mode.

    Args:
        enabled: True to enable OCP.
    """
    psu = _require_connection()
    psu.set_ocp(enabled)
    return json.dumps({"status": "ok", "ocp": "on" if enabled else "off"})


@mcp.tool()
def save(slot: int) -> str:
    """Store the current voltage/current limits in memory slot 1-5.

    Args:
        slot: Memory slot number (1-5).
    """
    psu = _require_connection()
    psu.save(check_slot(slot))
    return json.dumps({"status": "ok", "saved": slot})


@mcp.tool()
def recall(slot: int) -> str:
    """Restore voltage/current limits from memory slot 1-5.

    Args:
        slot: Memory slot number (1-5).
    """
    psu = _require_connection()
    psu.recall(check_slot(slot))
    return json.dumps({"status": "ok", "recalled": slot})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
