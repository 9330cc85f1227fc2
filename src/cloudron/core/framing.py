"""Wire framing for non-TTY exec sessions.

Client to server, every chunk of stdin is sent as::

    [length: 4 bytes big-endian][payload]

and a zero-length frame marks the end of input (the socket stays open).

Server to client, output arrives as::

    [type: 1 byte][reserved: 3 bytes][length: 4 bytes big-endian][payload]

where type 2 is stderr and anything else is stdout.
"""

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import List

OUTBOUND_HEADER = struct.Struct(">I")
INBOUND_HEADER = struct.Struct(">B3xI")
INBOUND_HEADER_SIZE = INBOUND_HEADER.size  # 8

EOF_FRAME = OUTBOUND_HEADER.pack(0)


class StreamType(IntEnum):
    STDOUT = 1
    STDERR = 2

    @classmethod
    def from_byte(cls, value: int) -> "StreamType":
        return cls.STDERR if value == cls.STDERR else cls.STDOUT


@dataclass(frozen=True)
class Frame:
    """One demultiplexed chunk of remote output."""

    stream: StreamType
    payload: bytes


def encode_frame(payload: bytes) -> bytes:
    """Prefix a stdin chunk with its 4-byte big-endian length."""
    return OUTBOUND_HEADER.pack(len(payload)) + payload


def encode_output_frame(stream: StreamType, payload: bytes) -> bytes:
    """Build a server-to-client frame. The server side of the protocol; used by tests."""
    return INBOUND_HEADER.pack(int(stream), len(payload)) + payload


def decode_outbound(data: bytes) -> List[bytes]:
    """Split client-to-server frames back into chunks.

    Decoding stops at the end-of-input frame, which is never returned as a
    chunk. Raises ValueError on a truncated frame.
    """
    chunks = []
    offset = 0
    while offset < len(data):
        if len(data) - offset < OUTBOUND_HEADER.size:
            raise ValueError("Truncated frame header")
        (length,) = OUTBOUND_HEADER.unpack_from(data, offset)
        offset += OUTBOUND_HEADER.size
        if length == 0:
            break
        if len(data) - offset < length:
            raise ValueError("Truncated frame payload")
        chunks.append(data[offset:offset + length])
        offset += length
    return chunks


class DecoderState(Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_PAYLOAD = "awaiting_payload"


class FrameDecoder:
    """Incremental parser for server-to-client frames.

    Bytes can be fed in arbitrary pieces; frame boundaries need not line up
    with read boundaries. Each call to ``feed`` returns the frames completed
    by that call, in order.
    """

    def __init__(self) -> None:
        self.state = DecoderState.AWAITING_HEADER
        self._buffer = bytearray()
        self._stream = StreamType.STDOUT
        self._length = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of an emitted frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Frame]:
        self._buffer.extend(data)
        frames = []

        while True:
            if self.state is DecoderState.AWAITING_HEADER:
                if len(self._buffer) < INBOUND_HEADER_SIZE:
                    break
                stream_byte, self._length = INBOUND_HEADER.unpack_from(self._buffer)
                self._stream = StreamType.from_byte(stream_byte)
                del self._buffer[:INBOUND_HEADER_SIZE]
                self.state = DecoderState.AWAITING_PAYLOAD

            if len(self._buffer) < self._length:
                break
            payload = bytes(self._buffer[:self._length])
            del self._buffer[:self._length]
            frames.append(Frame(self._stream, payload))
            self.state = DecoderState.AWAITING_HEADER

        return frames
