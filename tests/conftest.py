"""Shared fixtures for PLI tests."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pli import (
    PLI,
    CMD_READ_REGISTER,
    CMD_READ_EEPROM,
    CMD_WRITE_REGISTER,
    CMD_WRITE_EEPROM,
    CMD_TEST,
    SUCCESS,
    TEST_OK,
)


class FakeRegulator:
    """A PLI + regulator that answers frames the way the real one does.

    - ``registers`` / ``eeprom`` back the two address spaces
    - ``errors`` maps a read location to the error byte returned for it
    - ``fail_after`` makes every write from that frame count on raise OSError
    - ``frames`` records every frame accepted, in order
    """

    def __init__(self, registers=None, eeprom=None):
        self.registers = dict(registers or {})
        self.eeprom = dict(eeprom or {})
        self.errors = {}
        self.test_reply = TEST_OK
        self.fail_after = None
        self.frames = []
        self.closed = False
        self._pending = bytearray()

    def write(self, data):
        frame = bytes(data)
        assert len(frame) == 4, f"frame must be 4 bytes, got {frame.hex(' ')}"
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise OSError(5, "Input/output error")
        self.frames.append(frame)

        command, location, value, _ = frame
        if command in (CMD_READ_REGISTER, CMD_READ_EEPROM):
            if location in self.errors:
                self._pending += bytes([self.errors[location], 0x00])
            else:
                space = self.registers if command == CMD_READ_REGISTER else self.eeprom
                self._pending += bytes([SUCCESS, space.get(location, 0)])
        elif command == CMD_WRITE_REGISTER:
            self.registers[location] = value
        elif command == CMD_WRITE_EEPROM:
            self.eeprom[location] = value
        elif command == CMD_TEST:
            self._pending.append(self.test_reply)
        return len(frame)

    def read(self, size):
        chunk = bytes(self._pending[:size])
        del self._pending[:size]
        return chunk

    def close(self):
        self.closed = True

    def sent(self, command):
        """(location, data) of every frame sent with ``command``."""
        return [(f[1], f[2]) for f in self.frames if f[0] == command]


@pytest.fixture
def regulator():
    return FakeRegulator()


@pytest.fixture
def pli(regulator):
    """A PLI over the fake regulator with all delays removed."""
    return PLI(regulator, settle_delay=0, measure_delay=0)
