"""Pluggable protocol codecs.

The framings below only borrow the shape of the industrial protocols they are
named after (header layout, counters, unit ids). Bodies are JSON. None of them
is wire compatible with the real standard.
"""

from __future__ import annotations

import json
import logging
import struct
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from controlnet.core.errors import ProtocolError, UnknownTypeError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DecodedFrame:
    protocol: str
    sequence: int
    body: dict[str, Any]
    unit_id: int | None = None


def _dump_body(message: Mapping[str, Any]) -> bytes:
    try:
        return json.dumps(dict(message), separators=(",", ":"), default=str).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Message is not serialisable: {exc}") from exc


def _load_body(raw: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Frame body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise ProtocolError("Frame body must be a JSON object")
    return body


class ProtocolCodec(ABC):
    """Encode/decode strategy for one protocol."""

    name: ClassVar[str]
    sequence_modulus: ClassVar[int] = 1 << 16

    @abstractmethod
    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes: ...

    @abstractmethod
    def decode(self, data: bytes) -> DecodedFrame: ...

    def validate(self, data: bytes) -> bool:
        try:
            self.decode(data)
        except ProtocolError:
            return False
        return True


class NativeCodec(ProtocolCodec):
    name = "NATIVE"
    sequence_modulus = 1 << 32
    version = "1.0"

    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes:
        envelope = {"version": self.version, "sequence": sequence, "data": dict(message)}
        return _dump_body(envelope)

    def decode(self, data: bytes) -> DecodedFrame:
        envelope = _load_body(data)
        if "data" not in envelope or "version" not in envelope:
            raise ProtocolError("Native frame requires version and data")
        body = envelope["data"]
        if not isinstance(body, dict):
            raise ProtocolError("Native frame data must be an object")
        return DecodedFrame(self.name, int(envelope.get("sequence", 0)), body)


class ModbusTCPCodec(ProtocolCodec):
    """MBAP-style header: transaction id, protocol id (0), length, unit id."""

    name = "MODBUS_TCP"
    header = struct.Struct(">HHHB")

    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes:
        body = _dump_body(message)
        length = len(body) + 1
        if length > 0xFFFF:
            raise ProtocolError("Modbus frame too large")
        return self.header.pack(sequence % self.sequence_modulus, 0, length, unit_id & 0xFF) + body

    def decode(self, data: bytes) -> DecodedFrame:
        if len(data) < self.header.size:
            raise ProtocolError("Modbus frame shorter than header")
        transaction, protocol_id, length, unit_id = self.header.unpack_from(data)
        if protocol_id != 0:
            raise ProtocolError(f"Unexpected Modbus protocol id {protocol_id}")
        body = data[self.header.size :]
        if len(body) != length - 1:
            raise ProtocolError("Modbus length field does not match payload")
        return DecodedFrame(self.name, transaction, _load_body(body), unit_id)


class EtherNetIPCodec(ProtocolCodec):
    """Encapsulation-style header: command, length, session handle."""

    name = "ETHERNET_IP"
    header = struct.Struct(">HHI")
    command = 0x006F
    sequence_modulus = 1 << 32

    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes:
        body = _dump_body(message)
        if len(body) > 0xFFFF:
            raise ProtocolError("EtherNet/IP frame too large")
        return self.header.pack(self.command, len(body), sequence % self.sequence_modulus) + body

    def decode(self, data: bytes) -> DecodedFrame:
        if len(data) < self.header.size:
            raise ProtocolError("EtherNet/IP frame shorter than header")
        command, length, session = self.header.unpack_from(data)
        if command != self.command:
            raise ProtocolError(f"Unsupported EtherNet/IP command 0x{command:04X}")
        body = data[self.header.size :]
        if len(body) != length:
            raise ProtocolError("EtherNet/IP length field does not match payload")
        return DecodedFrame(self.name, session, _load_body(body))


class ProfinetCodec(ProtocolCodec):
    """Frame id followed by a cycle counter."""

    name = "PROFINET"
    header = struct.Struct(">HH")
    frame_id = 0x8000

    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes:
        return self.header.pack(self.frame_id, sequence % self.sequence_modulus) + _dump_body(
            message
        )

    def decode(self, data: bytes) -> DecodedFrame:
        if len(data) < self.header.size:
            raise ProtocolError("PROFINET frame shorter than header")
        frame_id, cycle = self.header.unpack_from(data)
        if frame_id != self.frame_id:
            raise ProtocolError(f"Unsupported PROFINET frame id 0x{frame_id:04X}")
        return DecodedFrame(self.name, cycle, _load_body(data[self.header.size :]))


class OPCUACodec(ProtocolCodec):
    """``MSG`` + final-chunk marker, little-endian message size and sequence number."""

    name = "OPC_UA"
    header = struct.Struct("<3scII")
    sequence_modulus = 1 << 32

    def encode(self, message: Mapping[str, Any], *, sequence: int, unit_id: int = 1) -> bytes:
        body = _dump_body(message)
        size = self.header.size + len(body)
        return self.header.pack(b"MSG", b"F", size, sequence % self.sequence_modulus) + body

    def decode(self, data: bytes) -> DecodedFrame:
        if len(data) < self.header.size:
            raise ProtocolError("OPC UA frame shorter than header")
        message_type, chunk, size, sequence = self.header.unpack_from(data)
        if message_type != b"MSG" or chunk != b"F":
            raise ProtocolError("Unsupported OPC UA message header")
        if size != len(data):
            raise ProtocolError("OPC UA message size does not match frame")
        return DecodedFrame(self.name, sequence, _load_body(data[self.header.size :]))


class ProtocolRegistry:
    """Codecs keyed by protocol name, with a sequence counter per protocol."""

    def __init__(self) -> None:
        self._codecs: dict[str, ProtocolCodec] = {}
        self._sequences: dict[str, int] = {}
        self.frames_encoded = 0
        self.frames_decoded = 0

    @classmethod
    def with_defaults(cls) -> ProtocolRegistry:
        registry = cls()
        codecs = (NativeCodec, ModbusTCPCodec, EtherNetIPCodec, ProfinetCodec, OPCUACodec)
        for codec_cls in codecs:
            registry.register(codec_cls())
        return registry

    def register(self, codec: ProtocolCodec) -> None:
        self._codecs[codec.name] = codec
        self._sequences.setdefault(codec.name, 0)

    def get(self, name: str) -> ProtocolCodec:
        codec = self._codecs.get(name)
        if codec is None:
            raise UnknownTypeError(f"Unknown protocol: {name}")
        return codec

    def names(self) -> list[str]:
        return list(self._codecs)

    def sequence(self, name: str) -> int:
        return self._sequences.get(name, 0)

    def encode(self, name: str, message: Mapping[str, Any], *, unit_id: int = 1) -> bytes:
        codec = self.get(name)
        sequence = self._sequences[name] + 1
        frame = codec.encode(message, sequence=sequence, unit_id=unit_id)
        self._sequences[name] = sequence
        self.frames_encoded += 1
        logger.debug("Encoded frame", extra={"protocol": name, "bytes": len(frame)})
        return frame

    def decode(self, name: str, data: bytes) -> DecodedFrame:
        frame = self.get(name).decode(data)
        self.frames_decoded += 1
        return frame

    def validate(self, name: str, data: bytes) -> bool:
        return self.get(name).validate(data)

    def get_status(self) -> dict[str, Any]:
        return {
            "protocols": self.names(),
            "sequences": dict(self._sequences),
            "frames_encoded": self.frames_encoded,
            "frames_decoded": self.frames_decoded,
        }


__all__ = [
    "DecodedFrame",
    "EtherNetIPCodec",
    "ModbusTCPCodec",
    "NativeCodec",
    "OPCUACodec",
    "ProfinetCodec",
    "ProtocolCodec",
    "ProtocolRegistry",
]
