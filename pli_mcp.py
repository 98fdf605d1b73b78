#!/usr/bin/env python3
"""
PL Solar Regulator MCP Server

Exposes a PL regulator (through its PLI) as MCP tools for LLM-driven
monitoring.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python pli_mcp.py                      # stdio transport (default)

Or configure in an MCP client's settings:
    {
        "mcpServers": {
            "solar": {
                "command": "python3",
                "args": ["pli_mcp.py"]
            }
        }
    }
"""

import json
from typing import Optional

from fastmcp import FastMCP

from pli import (
    DEFAULT_BAUD,
    DEFAULT_MODEL,
    IO_WAIT,
    PLI,
    PLIError,
    TimeoutAction,
    open_port,
)

mcp = FastMCP(
    "PL Solar Regulator",
    instructions=(
        "Reads a Steca/Plasmatronic PL solar charge regulator through a PLI "
        "serial interface. Always connect() first, then use other tools. "
        "Every tool is a short blocking exchange with the regulator; "
        "solar_voltage() takes a few seconds because the regulator's display "
        "has to settle. power_cycle() switches the load off and may cut power "
        "to the host running this server."
    ),
)

# Global regulator handle — one connection at a time
_pli: Optional[PLI] = None
_port = None


def _require_connection() -> PLI:
    if _pli is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _pli


def _call(fn, key: str, convert=lambda v: v) -> str:
    """Run one regulator call and wrap the result (or failure) as JSON."""
    pli = _require_connection()
    try:
        value = fn(pli)
    except PLIError as e:
        return json.dumps({"error": str(e), "status": e.status.name.lower()})
    return json.dumps({"status": "ok", key: convert(value)})


def connect(device: str, baud: int = DEFAULT_BAUD, model: str = DEFAULT_MODEL) -> str:
    """Connect to the PL regulator.

    Opens and exclusively locks the serial port the PLI is attached to.

    Args:
        device: Serial port path, e.g. "/dev/ttyUSB0".
        baud: Baud rate configured on the PLI (default 9600).
        model: Regulator model, "PL20", "PL40" or "PL60"; sets current scaling.
    """
    global _pli, _port
    if _pli is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    port = open_port(device, baud, wait=IO_WAIT, on_timeout=TimeoutAction.FAIL)
    try:
        pli = PLI(port, model=model)
    except ValueError:
        port.close()
        raise
    _pli, _port = pli, port

    return json.dumps({"status": "connected", "device": device, "model": model})


def disconnect() -> str:
    """Release the serial port. The regulator keeps running unaffected."""
    global _pli, _port
    if _pli is None:
        return json.dumps({"status": "already disconnected"})

    _port.close()
    _pli, _port = None, None
    return json.dumps({"status": "disconnected"})


def test_link() -> str:
    """Loopback test of the PLI connection."""
    return _call(lambda p: p.test(), "passed")


def get_version() -> str:
    """PL software version."""
    return _call(lambda p: p.version(), "version")


def get_day() -> str:
    """Day counter kept by the regulator."""
    return _call(lambda p: p.day(), "day")


def get_time() -> str:
    """Regulator clock as HH:MM:SS."""
    return _call(lambda p: p.time(), "time", str)


def set_day_time() -> str:
    """Set the regulator's day and time from this host's local time."""
    return _call(lambda p: p.set_day_time(), "set", lambda now: now.isoformat(timespec="seconds"))


def battery_capacity() -> str:
    """Configured battery capacity in Ah."""
    return _call(lambda p: p.battery_capacity(), "battery_capacity_ah")


def battery_voltage() -> str:
    """Current battery voltage in V."""
    return _call(lambda p: p.battery_voltage(), "battery_voltage", lambda v: round(v, 1))


def solar_voltage() -> str:
    """Current solar panel voltage in V (takes about 3 seconds)."""
    return _call(lambda p: p.solar_voltage(), "solar_voltage", lambda v: round(v, 1))


def charge_current() -> str:
    """Current charging current in A, internal plus external shunt."""
    return _call(lambda p: p.charge_current(), "charge_current", lambda v: round(v, 1))


def load_current() -> str:
    """Current load current in A, internal plus external shunt."""
    return _call(lambda p: p.load_current(), "load_current", lambda v: round(v, 1))


def regulator_state() -> str:
    """Charging phase: boost, equalize, absorption or float."""
    return _call(lambda p: p.state(), "state", str)


def save_configuration(path: str = "solar.conf") -> str:
    """Save the regulator's EEPROM configuration block to a file.

    Args:
        path: File to write, overwritten if it exists.
    """
    return _call(lambda p: p.save(path), "saved_bytes", len)


def restore_configuration(path: str = "solar.conf") -> str:
    """Write a configuration block saved by save_configuration() back to EEPROM.

    Args:
        path: File produced by save_configuration().
    """
    return _call(lambda p: p.restore(path), "restored_bytes", len)


def power_cycle() -> str:
    """Switch the load output off; the regulator turns it back on after its delay.

    If this host is powered from the load output, the connection will drop.
    """
    return _call(lambda p: p.power_cycle(), "display_restored")


for _tool in (connect, disconnect, test_link, get_version, get_day, get_time,
              set_day_time, battery_capacity, battery_voltage, solar_voltage,
              charge_current, load_current, regulator_state, save_configuration,
              restore_configuration, power_cycle):
    mcp.tool(_tool)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
