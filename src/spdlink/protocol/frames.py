"""
The two frame kinds sent by the bridge device.

Alert frames are unsolicited notifications, 2 bytes long::

    +------+------+
    | 0x40 | code |
    +------+------+

Response frames answer a command::

    +------+-----+----------------+----------+
    | 0x26 | len | body[len]      | checksum |
    +------+-----+----------------+----------+

The body is at most 32 bytes. The checksum is the sum of the body bytes modulo 256.
"""
from spdlink.protocol.errors import FramingError
from spdlink.support.mixins import ValueObject

ALERT_HEADER = ord('@')
RESPONSE_HEADER = ord('&')

MIN_FRAME_SIZE = 2
MAX_BODY_SIZE = 32
MAX_FRAME_SIZE = MIN_FRAME_SIZE + MAX_BODY_SIZE + 1


class FrameKind:
    alert = 'alert'
    response = 'response'


def checksum(body) -> int:
    """
    Computes the additive checksum of a response body.

    >>> checksum(b'\\x01\\x02')
    3
    >>> checksum(bytes([0xFF, 0x02]))
    1
    """
    return sum(body) & 0xFF


def validate_checksum(body, expected) -> bool:
    return checksum(body) == expected


def parse_header(first_byte) -> str:
    """
    Determines the frame kind from the first byte of a frame.
    :raises FramingError: if the byte is not a frame header.
    """
    if first_byte == ALERT_HEADER:
        return FrameKind.alert
    if first_byte == RESPONSE_HEADER:
        return FrameKind.response
    raise FramingError("unrecognized frame header 0x%02X" % first_byte)


class Frame(ValueObject):
    """ base class for frames received from the device. """

    kind = None

    @property
    def raw(self) -> bytes:
        """ the frame as it appears on the wire. """
        raise NotImplementedError


class AlertFrame(Frame):
    kind = FrameKind.alert

    def __init__(self, code: int):
        self.code = code

    @property
    def raw(self):
        return bytes([ALERT_HEADER, self.code])

    def __repr__(self):
        return "AlertFrame(code=%r)" % chr(self.code)


class ResponseFrame(Frame):
    kind = FrameKind.response

    def __init__(self, body: bytes, checksum: int):
        if len(body) > MAX_BODY_SIZE:
            raise FramingError("response body of %d bytes exceeds %d" % (len(body), MAX_BODY_SIZE))
        self.body = bytes(body)
        self.checksum = checksum

    @classmethod
    def for_body(cls, body):
        """ creates a response frame with a valid checksum. """
        return cls(body, checksum(body))

    @property
    def checksum_valid(self) -> bool:
        return validate_checksum(self.body, self.checksum)

    @property
    def raw(self):
        return bytes([RESPONSE_HEADER, len(self.body)]) + self.body + bytes([self.checksum])

    def __repr__(self):
        return "ResponseFrame(body=%s, checksum=0x%02X)" % (self.body.hex(' ') or '(empty)', self.checksum)


def parse_frame(data) -> Frame:
    """
    Parses exactly one complete frame.

    >>> parse_frame(b'@!')
    AlertFrame(code='!')
    >>> parse_frame(b'&\\x01\\x01\\x01')
    ResponseFrame(body=01, checksum=0x01)

    :raises FramingError: if the header is not recognized or the size does not match the header.
    """
    data = bytes(data)
    if len(data) < MIN_FRAME_SIZE:
        raise FramingError("frame of %d bytes is too short" % len(data))
    kind = parse_header(data[0])
    if kind == FrameKind.alert:
        if len(data) != MIN_FRAME_SIZE:
            raise FramingError("alert frame must be %d bytes, got %d" % (MIN_FRAME_SIZE, len(data)))
        return AlertFrame(data[1])

    length = data[1]
    if length > MAX_BODY_SIZE:
        raise FramingError("response length %d exceeds %d" % (length, MAX_BODY_SIZE))
    if len(data) != MIN_FRAME_SIZE + length + 1:
        raise FramingError("response frame must be %d bytes, got %d" % (MIN_FRAME_SIZE + length + 1, len(data)))
    return ResponseFrame(data[MIN_FRAME_SIZE:MIN_FRAME_SIZE + length], data[-1])
