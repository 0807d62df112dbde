from abc import abstractmethod
import threading

from spdlink.protocol.errors import DeviceError


class TransportError(DeviceError, IOError):
    """ Opening, reading from or writing to the byte stream failed. The underlying error is the cause. """


class ConduitStats:
    """ Cumulative counts of the bytes passed through a conduit. """

    def __init__(self):
        self._lock = threading.Lock()
        self.bytes_sent = 0
        self.bytes_received = 0

    def sent(self, count):
        with self._lock:
            self.bytes_sent += count

    def received(self, count):
        with self._lock:
            self.bytes_received += count

    def reset(self):
        with self._lock:
            self.bytes_sent = 0
            self.bytes_received = 0


class Conduit:
    """
    A conduit allows two-way communication with a device as a stream of bytes.

    There is a single reader (the frame receiver) and a single writer (the command correlator),
    which may run on different threads.
    """

    def __init__(self):
        self.stats = ConduitStats()

    @property
    @abstractmethod
    def target(self):
        """ the underlying resource. """
        raise NotImplementedError

    @property
    @abstractmethod
    def open(self) -> bool:
        """ determines if this conduit is open. When open, the conduit can be read from/written to."""
        raise NotImplementedError

    @abstractmethod
    def close(self):
        raise NotImplementedError

    @property
    @abstractmethod
    def bytes_available(self) -> int:
        """ the number of bytes that can be read without blocking. """
        raise NotImplementedError

    def read(self, count) -> bytes:
        """
        Reads up to count bytes. Blocks until count bytes are available or the conduit's read timeout expires,
        so the result may be shorter than requested.
        :raises TransportError: if the read fails.
        """
        data = self._read(count)
        self.stats.received(len(data))
        return data

    def write(self, data):
        """
        Writes all the given bytes.
        :raises TransportError: if the write fails.
        """
        self._write(data)
        self.stats.sent(len(data))

    def flush(self):
        """ waits until all written data has been transmitted. """

    @abstractmethod
    def discard_buffers(self):
        """ discards any unread input and any unsent output. """
        raise NotImplementedError

    @abstractmethod
    def _read(self, count) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def _write(self, data):
        raise NotImplementedError


class ConduitFactory:
    """
    A factory knows how to create an open conduit given appropriate construction arguments.
    """
    @abstractmethod
    def __call__(self) -> Conduit:
        """
        Opens and returns the conduit.
        :raises TransportError: if the resource cannot be opened.
        """
        raise NotImplementedError()
