"""
Frame decoder for newline/chunk delimited JSON streams.

Splits a byte stream of consecutive JSON objects into classified frames:

    {"tick": {"instrument": "EUR_USD", ...}}      -> StreamMessage("tick", b'{...}')
    {"heartbeat": {"time": "..."}}                -> StreamMessage("heartbeat", b'{...}')
    {"disconnect": {"code": 64, ...}}             -> StreamMessage("disconnect", b'{...}')
    {"code": 1, "message": "...", "moreInfo": ""} -> raises ApiError

Objects may be split across chunks at any byte. The decoder keeps the partial
object buffered until the closing brace arrives.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Optional

import orjson

from fxclient.stream.errors import ApiError, FrameSyntaxError, MessageParseError
from fxclient.stream.types import StreamMessage

logger = logging.getLogger(__name__)

_WHITESPACE = frozenset(b" \t\r\n")
_OPEN = frozenset(b"{[")
_CLOSE = frozenset(b"}]")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_LBRACE = ord("{")


class FrameDecoder:
    """
    Incremental decoder producing StreamMessage values from raw body chunks.

    One decoder is used per connection. After a fatal error frame the decoder
    refuses further input.
    """

    def __init__(
        self,
        envelope_keys: Iterable[str] = (),
        max_frame_bytes: Optional[int] = None,
        name: str = "decoder",
    ) -> None:
        """
        Initialize the decoder.

        Args:
            envelope_keys: Top-level keys ignored when picking the frame kind
            max_frame_bytes: Largest incomplete frame held back (None = unbounded)
            name: Name for logging purposes
        """
        self._envelope_keys = frozenset(envelope_keys)
        self._max_frame_bytes = max_frame_bytes
        self._name = name

        # Scanner state
        self._buf = bytearray()
        self._pos = 0
        self._start = 0
        self._depth = 0
        self._in_string = False
        self._escape = False

        self._fatal: Optional[ApiError] = None

        # Statistics
        self.frames_decoded = 0
        self.frames_skipped = 0

    @property
    def buffered(self) -> int:
        """Number of bytes held back waiting for the rest of a frame."""
        return len(self._buf)

    def feed(self, chunk: bytes) -> Iterator[StreamMessage]:
        """
        Add a chunk and iterate over the frames it completes.

        Raises (while iterating):
            ApiError: Error frame with a non-zero code
            FrameSyntaxError: Body is not valid JSON
        """
        if self._fatal is not None:
            raise self._fatal
        self._buf += chunk
        return self._drain()

    def finish(self) -> None:
        """
        Signal end of stream.

        Whitespace left over is an ordinary close. Anything else means the body was
        cut off mid-frame.
        """
        residue = bytes(self._buf)
        self._reset()
        if residue.strip():
            raise FrameSyntaxError(
                "Stream ended inside a frame",
                residue=residue,
                component=self._name,
            )

    def _reset(self) -> None:
        self._buf.clear()
        self._pos = 0
        self._start = 0
        self._depth = 0
        self._in_string = False
        self._escape = False

    def _drain(self) -> Iterator[StreamMessage]:
        for raw in self._split():
            msg = self._classify(raw)
            if msg is not None:
                yield msg

        # Only the unfinished frame is left in the buffer
        if self._max_frame_bytes is not None and len(self._buf) > self._max_frame_bytes:
            size = len(self._buf)
            snippet = bytes(self._buf[:32])
            self._reset()
            raise FrameSyntaxError(
                f"Frame exceeds {self._max_frame_bytes} bytes ({size} buffered)",
                residue=snippet,
                component=self._name,
            )

    def _split(self) -> Iterator[bytes]:
        """Yield complete top-level objects from the buffer."""
        buf = self._buf
        i = self._pos
        while i < len(buf):
            c = buf[i]
            if self._depth == 0:
                if c in _WHITESPACE:
                    i += 1
                    continue
                if c != _LBRACE:
                    snippet = bytes(buf[i : i + 32])
                    self._reset()
                    raise FrameSyntaxError(
                        f"Unexpected data between frames: {snippet!r}",
                        residue=snippet,
                        component=self._name,
                    )
                self._start = i
                self._depth = 1
            elif self._in_string:
                if self._escape:
                    self._escape = False
                elif c == _BACKSLASH:
                    self._escape = True
                elif c == _QUOTE:
                    self._in_string = False
            elif c == _QUOTE:
                self._in_string = True
            elif c in _OPEN:
                self._depth += 1
            elif c in _CLOSE:
                self._depth -= 1
                if self._depth == 0:
                    raw = bytes(buf[self._start : i + 1])
                    del buf[: i + 1]
                    i = 0
                    self._pos = 0
                    self._start = 0
                    yield raw
                    continue
            i += 1

        if self._depth == 0:
            # Only whitespace left
            buf.clear()
            i = 0
        self._pos = i

    def _classify(self, raw: bytes) -> Optional[StreamMessage]:
        try:
            obj = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            self._reset()
            raise FrameSyntaxError(
                f"Invalid JSON frame: {e}",
                residue=raw,
                component=self._name,
            ) from e

        if "code" in obj:
            try:
                err = ApiError.from_dict(obj, component=self._name)
            except MessageParseError as e:
                self.frames_skipped += 1
                logger.warning(f"[{self._name}] Skipping malformed error frame: {e}")
                return None
            if err.code != 0:
                self._fatal = err
                self._reset()
                raise err
            self.frames_skipped += 1
            logger.debug(f"[{self._name}] Ignoring error frame with code 0")
            return None

        keys = [k for k in obj if k not in self._envelope_keys]
        if len(keys) != 1:
            self.frames_skipped += 1
            logger.warning(
                f"[{self._name}] Skipping frame with {len(keys)} candidate keys: {keys[:5]}"
            )
            return None

        kind = keys[0]
        self.frames_decoded += 1
        return StreamMessage(kind=kind, payload=orjson.dumps(obj[kind]))
