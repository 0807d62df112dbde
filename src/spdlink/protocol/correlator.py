"""
Sends one command at a time and pairs it with the response frame that follows.

The protocol carries no request identifier, so a response can only be matched to a command by
ensuring a single command is outstanding. Each correlator has its own lock, so separate devices
are never serialized against each other.
"""
import logging
import threading

from spdlink.conduit.base import Conduit
from spdlink.protocol.commands import Command
from spdlink.protocol.errors import ChecksumMismatch, CommandCancelled, DeviceError, ResponseTimeoutError, \
    UnexpectedFrame
from spdlink.protocol.frames import Frame, FrameKind

logger = logging.getLogger(__name__)


class PendingSlot:
    """
    Holds the response frame for the command in flight.

    The slot only accepts a frame while armed. Frames delivered at any other time, such as a response
    arriving after its command timed out, are refused so they can never satisfy a later command.
    Cancelling the slot wakes the waiting caller without a frame.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._frame = None
        self._armed = False
        self._cancelled = False

    @property
    def armed(self):
        return self._armed

    @property
    def cancelled(self):
        return self._cancelled

    def arm(self):
        """ prepares the slot to receive the response to a command about to be sent. """
        with self._lock:
            self._frame = None
            self._ready.clear()
            self._armed = True
            self._cancelled = False

    def deliver(self, frame: Frame) -> bool:
        """
        Places the frame in the slot and wakes the waiting caller.
        :return: False if the frame was refused because no response is awaited.
        """
        with self._lock:
            if not self._armed or self._frame is not None:
                return False
            self._frame = frame
            self._ready.set()
            return True

    def wait(self, timeout) -> Frame:
        """ waits up to timeout seconds for a frame. Returns None on timeout or when cancelled. """
        if not self._ready.wait(timeout):
            return None
        with self._lock:
            return self._frame

    def clear(self):
        with self._lock:
            self._armed = False
            self._cancelled = False
            self._frame = None
            self._ready.clear()

    def cancel(self):
        """ disarms the slot and releases any caller waiting on it. """
        with self._lock:
            self._armed = False
            self._cancelled = True
            self._frame = None
            self._ready.set()


class CommandCorrelator:
    """
    Executes commands over a conduit and returns the body of the matching response.

    :param conduit: the conduit commands are written to
    :param slot: where the frame receiver delivers response frames
    :param timeout: the default time in seconds to wait for a response
    """

    def __init__(self, conduit: Conduit, slot: PendingSlot, timeout=10.0, log=logger):
        self.conduit = conduit
        self.slot = slot
        self.timeout = timeout
        self.logger = log
        self.lock = threading.RLock()

    def execute(self, command: Command, timeout=None) -> bytes:
        """
        Sends the command and waits for its response.

        :return: the response body
        :raises ResponseTimeoutError: if no response arrives within the timeout
        :raises UnexpectedFrame: if the frame delivered is not a response
        :raises ChecksumMismatch: if the response fails the checksum
        :raises CommandCancelled: if the slot is cancelled while waiting
        :raises TransportError: if the command cannot be written
        """
        timeout = self.timeout if timeout is None else timeout
        with self.lock:
            try:
                self.conduit.discard_buffers()
                self.slot.arm()
                self.logger.debug("sending %r", command)
                self.conduit.write(command.data)
                self.conduit.flush()

                frame = self.slot.wait(timeout)
                if frame is None and self.slot.cancelled:
                    raise CommandCancelled("the connection closed while waiting for a response")
                if frame is None:
                    raise ResponseTimeoutError("no response within %.3gs" % timeout)
                if frame.kind != FrameKind.response:
                    raise UnexpectedFrame("expected a response frame, got %r" % frame)
                if not frame.checksum_valid:
                    raise ChecksumMismatch("response checksum 0x%02X does not match body %s"
                                           % (frame.checksum, frame.body.hex(' ')))
                return frame.body
            except DeviceError as e:
                raise e.add_context(command=command.data)
            finally:
                self.slot.clear()
