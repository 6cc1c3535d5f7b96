"""Binary instruction records as stored in trace files."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO, ClassVar, Union

# Special registers that help identify branches.
REG_STACK_POINTER = 6
REG_FLAGS = 25
REG_INSTRUCTION_POINTER = 26

NUM_INSTR_DESTINATIONS_SPARC = 4
NUM_INSTR_DESTINATIONS = 2
NUM_INSTR_SOURCES = 4
OPCODE_BYTES = 64

_INPUT_STRUCT = struct.Struct("<QQBB2B4B2Q4Q64sI4x")
_CLOUDSUITE_STRUCT = struct.Struct("<QQBB4B4B6x4Q4Q2B64s2xI")

INPUT_INSTR_SIZE = _INPUT_STRUCT.size
CLOUDSUITE_INSTR_SIZE = _CLOUDSUITE_STRUCT.size


def _fixed(name: str, values, count: int) -> tuple[int, ...]:
    values = tuple(values)
    if len(values) != count:
        raise ValueError(f"{name} must hold exactly {count} values, got {len(values)}")
    return values


def _opcode(raw: bytes) -> bytes:
    raw = bytes(raw)
    if len(raw) > OPCODE_BYTES:
        raise ValueError(f"opcode holds at most {OPCODE_BYTES} bytes")
    return raw.ljust(OPCODE_BYTES, b"\0")


def _check_length(data: bytes, size: int) -> None:
    if len(data) != size:
        raise ValueError(f"record must be {size} bytes, got {len(data)}")


@dataclass
class InputInstr:
    """The standard trace record."""

    SIZE: ClassVar[int] = INPUT_INSTR_SIZE

    thread_id: int = 0
    ip: int = 0
    is_branch: int = 0
    branch_taken: int = 0
    destination_registers: tuple[int, ...] = (0,) * NUM_INSTR_DESTINATIONS
    source_registers: tuple[int, ...] = (0,) * NUM_INSTR_SOURCES
    destination_memory: tuple[int, ...] = (0,) * NUM_INSTR_DESTINATIONS
    source_memory: tuple[int, ...] = (0,) * NUM_INSTR_SOURCES
    opcode: bytes = bytes(OPCODE_BYTES)
    opcode_size: int = 0

    def __post_init__(self) -> None:
        self.destination_registers = _fixed("destination_registers", self.destination_registers, NUM_INSTR_DESTINATIONS)
        self.source_registers = _fixed("source_registers", self.source_registers, NUM_INSTR_SOURCES)
        self.destination_memory = _fixed("destination_memory", self.destination_memory, NUM_INSTR_DESTINATIONS)
        self.source_memory = _fixed("source_memory", self.source_memory, NUM_INSTR_SOURCES)
        self.opcode = _opcode(self.opcode)

    @property
    def opcode_bytes(self) -> bytes:
        """The valid part of the opcode field."""
        return self.opcode[: self.opcode_size]

    @classmethod
    def from_bytes(cls, data: bytes) -> "InputInstr":
        _check_length(data, cls.SIZE)
        f = _INPUT_STRUCT.unpack(data)
        return cls(
            thread_id=f[0],
            ip=f[1],
            is_branch=f[2],
            branch_taken=f[3],
            destination_registers=f[4:6],
            source_registers=f[6:10],
            destination_memory=f[10:12],
            source_memory=f[12:16],
            opcode=f[16],
            opcode_size=f[17],
        )

    def to_bytes(self) -> bytes:
        return _INPUT_STRUCT.pack(
            self.thread_id,
            self.ip,
            self.is_branch,
            self.branch_taken,
            *self.destination_registers,
            *self.source_registers,
            *self.destination_memory,
            *self.source_memory,
            self.opcode,
            self.opcode_size,
        )


@dataclass
class CloudsuiteInstr:
    """The cloudsuite trace record, with more destinations and an address-space id."""

    SIZE: ClassVar[int] = CLOUDSUITE_INSTR_SIZE

    thread_id: int = 0
    ip: int = 0
    is_branch: int = 0
    branch_taken: int = 0
    destination_registers: tuple[int, ...] = (0,) * NUM_INSTR_DESTINATIONS_SPARC
    source_registers: tuple[int, ...] = (0,) * NUM_INSTR_SOURCES
    destination_memory: tuple[int, ...] = (0,) * NUM_INSTR_DESTINATIONS_SPARC
    source_memory: tuple[int, ...] = (0,) * NUM_INSTR_SOURCES
    asid: tuple[int, ...] = (0, 0)
    opcode: bytes = bytes(OPCODE_BYTES)
    opcode_size: int = 0

    def __post_init__(self) -> None:
        self.destination_registers = _fixed("destination_registers", self.destination_registers, NUM_INSTR_DESTINATIONS_SPARC)
        self.source_registers = _fixed("source_registers", self.source_registers, NUM_INSTR_SOURCES)
        self.destination_memory = _fixed("destination_memory", self.destination_memory, NUM_INSTR_DESTINATIONS_SPARC)
        self.source_memory = _fixed("source_memory", self.source_memory, NUM_INSTR_SOURCES)
        self.asid = _fixed("asid", self.asid, 2)
        self.opcode = _opcode(self.opcode)

    @property
    def opcode_bytes(self) -> bytes:
        """The valid part of the opcode field."""
        return self.opcode[: self.opcode_size]

    @classmethod
    def from_bytes(cls, data: bytes) -> "CloudsuiteInstr":
        _check_length(data, cls.SIZE)
        f = _CLOUDSUITE_STRUCT.unpack(data)
        return cls(
            thread_id=f[0],
            ip=f[1],
            is_branch=f[2],
            branch_taken=f[3],
            destination_registers=f[4:8],
            source_registers=f[8:12],
            destination_memory=f[12:16],
            source_memory=f[16:20],
            asid=f[20:22],
            opcode=f[22],
            opcode_size=f[23],
        )

    def to_bytes(self) -> bytes:
        return _CLOUDSUITE_STRUCT.pack(
            self.thread_id,
            self.ip,
            self.is_branch,
            self.branch_taken,
            *self.destination_registers,
            *self.source_registers,
            *self.destination_memory,
            *self.source_memory,
            *self.asid,
            self.opcode,
            self.opcode_size,
        )


TraceRecord = Union[InputInstr, CloudsuiteInstr]


def read_instructions(stream: BinaryIO, cloudsuite: bool = False) -> Iterator[TraceRecord]:
    """Yield records from a binary stream until it runs out; a trailing partial record is dropped."""
    record_type = CloudsuiteInstr if cloudsuite else InputInstr
    size = record_type.SIZE
    while True:
        data = stream.read(size)
        if len(data) < size:
            return
        yield record_type.from_bytes(bytes(data))