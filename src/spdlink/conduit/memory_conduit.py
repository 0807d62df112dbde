"""
An in-process conduit, used to run the protocol against a simulated device.

The host side is a regular Conduit. The device side pushes bytes to the host with feed(), and sees
the bytes the host writes through the on_write callback.
"""
import threading
from collections import deque

from spdlink.conduit.base import Conduit, ConduitFactory, TransportError


class MemoryConduit(Conduit):
    """
    A thread-safe byte pipe. Reads wait on a condition that is notified when the device feeds bytes
    or the conduit is closed.

    :param on_write: called with each chunk of bytes written by the host.
    :param read_timeout: seconds a read blocks waiting for data.
    """

    def __init__(self, on_write=None, read_timeout=0.1):
        super().__init__()
        self.on_write = on_write
        self.read_timeout = read_timeout
        self._input = deque()
        self._condition = threading.Condition()
        self._open = True
        self.written = bytearray()

    @property
    def target(self):
        return self

    @property
    def open(self):
        return self._open

    def close(self):
        with self._condition:
            self._open = False
            self._condition.notify_all()

    def feed(self, data):
        """ device side: makes the given bytes available to the host. """
        with self._condition:
            self._input.extend(bytes(data))
            self._condition.notify_all()

    @property
    def bytes_available(self):
        with self._condition:
            return len(self._input)

    def discard_buffers(self):
        self._check_open()
        with self._condition:
            self._input.clear()

    def _check_open(self):
        if not self._open:
            raise TransportError("conduit is closed")

    def _read(self, count):
        with self._condition:
            self._condition.wait_for(lambda: len(self._input) >= count or not self._open, self.read_timeout)
            self._check_open()
            n = min(count, len(self._input))
            return bytes(self._input.popleft() for _ in range(n))

    def _write(self, data):
        self._check_open()
        data = bytes(data)
        self.written += data
        if self.on_write:
            self.on_write(data)


class MemoryConduitFactory(ConduitFactory):
    """ Hands out a new memory conduit each time it is called, remembering the last one created. """

    def __init__(self, on_write=None, on_open=None, read_timeout=0.1):
        self.on_write = on_write
        self.on_open = on_open
        self.read_timeout = read_timeout
        self.conduit = None

    def __call__(self):
        self.conduit = MemoryConduit(self.on_write, self.read_timeout)
        if self.on_open:
            self.on_open(self.conduit)
        return self.conduit
