"""
Reads frames from a conduit on a background thread and routes them to their consumers.
"""
import logging

from spdlink.conduit.base import Conduit, TransportError
from spdlink.protocol.async_loop import AsyncLoop
from spdlink.protocol.errors import FramingError
from spdlink.protocol.frames import AlertFrame, FrameKind, MAX_BODY_SIZE, MIN_FRAME_SIZE, ResponseFrame, \
    parse_header

logger = logging.getLogger(__name__)


class FrameReceiver(AsyncLoop):
    """
    The sole reader of a conduit. Each iteration of the loop reads one complete frame.

    Alert frames are passed to on_alert, which must not block. Response frames are passed to on_response,
    which returns False when no command is waiting for a response, in which case the frame is discarded.

    When a byte is read where a frame header is expected, the byte is dropped and the following byte
    is examined as the next header candidate, until the stream is back in sync.
    A read error closes the conduit and stops the receiver.
    """

    def __init__(self, conduit: Conduit, on_response, on_alert, log=logger):
        super().__init__(log=log, name='frame-receiver')
        self.conduit = conduit
        self.on_response = on_response
        self.on_alert = on_alert
        self.framing_errors = 0
        self.discarded = 0

    def loop(self):
        if not self.conduit.open:
            self.stop()
            return
        try:
            frame = self.read_frame()
        except TransportError as e:
            if self.running() and self.conduit.open:
                self.logger.error("closing conduit after read failure: %s", e)
                self.conduit.close()
            self.stop()
            return
        if frame is not None:
            self.process_frame(frame)

    def process_frame(self, frame):
        self.logger.debug("received %r", frame)
        if frame.kind == FrameKind.alert:
            self.on_alert(frame)
        elif not self.on_response(frame):
            self.discarded += 1
            self.logger.warning("discarding %r: no command is waiting for a response", frame)

    def read_frame(self):
        """
        Reads the next complete frame, resynchronizing on unrecognized headers.
        :return: the frame read, or None if the receiver was stopped or the conduit closed part way through.
        """
        prefix = self._read_exact(MIN_FRAME_SIZE)
        while prefix is not None:
            try:
                kind = self._parse_prefix(prefix)
                break
            except FramingError as e:
                self.framing_errors += 1
                self.logger.warning("%s, dropping byte 0x%02X", e, prefix[0])
                more = self._read_exact(1)
                prefix = prefix[1:] + more if more is not None else None

        if prefix is None:
            return None
        if kind == FrameKind.alert:
            return AlertFrame(prefix[1])

        rest = self._read_exact(prefix[1] + 1)
        if rest is None:
            return None
        return ResponseFrame(rest[:-1], rest[-1])

    @staticmethod
    def _parse_prefix(prefix):
        kind = parse_header(prefix[0])
        if kind == FrameKind.response and prefix[1] > MAX_BODY_SIZE:
            raise FramingError("response length %d exceeds %d" % (prefix[1], MAX_BODY_SIZE))
        return kind

    def _read_exact(self, count):
        """ blocks until count bytes are read. Returns None if the receiver is stopped or the conduit is closed. """
        buf = bytearray()
        while len(buf) < count:
            if not self.running() or not self.conduit.open:
                return None
            buf += self.conduit.read(count - len(buf))
        return bytes(buf)
