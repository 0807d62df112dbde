"""
Converts between response bodies and typed values, and flattens command parameters into bytes.

The wire carries no type information, so callers name the type they expect with a WireType tag.
Numeric values are little-endian. A body shorter than the numeric type is zero-extended.
"""
from abc import abstractmethod
from enum import Enum

from spdlink.protocol.errors import DecodeError, EncodingError


def unsigned_byte(val):
    """Convert a signed byte value to the corresponding unsigned value.

    >>> unsigned_byte(0)
    0
    >>> unsigned_byte(-1)
    255
    >>> unsigned_byte(127)
    127
    >>> unsigned_byte(-128)
    128
    """
    return val if val >= 0 else val + 256


class WireType:
    """ The types a response body can be decoded as. """
    raw = 'raw'
    string = 'string'
    boolean = 'boolean'
    byte = 'byte'
    word = 'word'
    dword = 'dword'
    qword = 'qword'


class Decoder:
    @abstractmethod
    def decode(self, data):
        """
        decodes a response body.
        :param data: a buffer of binary data to decode
        :returns a value representing the decoded data
        """
        raise NotImplementedError


class Encoder:
    @abstractmethod
    def encode(self, value) -> bytes:
        """Encode a given value as a data buffer."""
        raise NotImplementedError


class Codec(Decoder, Encoder):
    """
    Knows how to convert a value to/from the on-wire data format.
    """


class RawCodec(Codec):
    """ The body is returned unchanged. """

    def decode(self, data):
        return bytes(data)

    def encode(self, value):
        return bytes(value)


class StringCodec(Codec):
    """
    Each byte is one character. Trailing padding (NUL and whitespace) is removed.
    """

    padding = '\x00 \t\r\n'

    def decode(self, data):
        return bytes(data).decode('latin-1').rstrip(self.padding)

    def encode(self, value):
        try:
            return value.encode('ascii')
        except UnicodeEncodeError as e:
            raise EncodingError("'%s' is not ASCII" % value) from e


class UnsignedCodec(Codec):
    """
    An unsigned little-endian integer of a fixed size.
    """

    def __init__(self, size):
        self.size = size

    def encoded_len(self):
        return self.size

    def decode(self, data):
        value = 0
        for i, b in enumerate(bytes(data[:self.size])):
            value |= b << (8 * i)
        return value

    def encode(self, value):
        value = int(value)
        if not 0 <= value < (1 << (8 * self.size)):
            raise EncodingError("%d does not fit in %d byte(s)" % (value, self.size))
        return value.to_bytes(self.size, 'little')


class BooleanCodec(UnsignedCodec):
    """ A single byte that is true when non-zero. """

    def __init__(self):
        super().__init__(1)

    def decode(self, data):
        return super().decode(data) != 0

    def encode(self, value):
        return super().encode(1 if value else 0)


class NullCodec(Codec):
    """ Used for types that have no codec. Decodes to the default value, None. """

    def decode(self, data):
        return None

    def encode(self, value):
        return b''


class TypeMappingCodec:
    def __init__(self, codecs: callable, default: Codec=None):
        self.codecs = codecs
        self.default = default

    def encode(self, type, value):
        delegate = self.fetch(type)
        return delegate.encode(value)

    def decode(self, type, data):
        delegate = self.fetch(type)
        return delegate.decode(data)

    def fetch(self, type):
        delegate = self.codecs(type) or self.default
        if not delegate:
            raise KeyError(type)
        return delegate


class DictionaryMappingCodec(TypeMappingCodec):
    def __init__(self, codecs: dict, default: Codec=None):
        super().__init__(self.lookup, default)
        self.codecs_dict = codecs

    def lookup(self, type):
        return self.codecs_dict.get(type)


wire_codecs = DictionaryMappingCodec({
    WireType.raw: RawCodec(),
    WireType.string: StringCodec(),
    WireType.boolean: BooleanCodec(),
    WireType.byte: UnsignedCodec(1),
    WireType.word: UnsignedCodec(2),
    WireType.dword: UnsignedCodec(4),
    WireType.qword: UnsignedCodec(8),
}, default=NullCodec())


def decode(body, wire_type=WireType.raw):
    """
    Decodes a response body as the given wire type.

    >>> decode(b'\\x01', WireType.boolean)
    True
    >>> decode(b'\\x34\\x12', WireType.dword)
    4660
    >>> decode(b'abc\\x00\\x00', WireType.string)
    'abc'
    >>> decode(b'abc', 'unknown') is None
    True
    """
    if not isinstance(body, (bytes, bytearray, memoryview)):
        raise DecodeError("cannot decode %s as %s" % (type(body).__name__, wire_type))
    return wire_codecs.decode(wire_type, body)


def encode_value(value, wire_type=WireType.raw):
    """
    Encodes a value as the given wire type. This is the inverse of decode() for values that fit the type.

    >>> encode_value(4660, WireType.word)
    b'4\\x12'
    """
    return wire_codecs.encode(wire_type, value)


def _flatten(part, result):
    if isinstance(part, bool):
        result.append(1 if part else 0)
    elif isinstance(part, Enum):
        _flatten(part.value, result)
    elif isinstance(part, int):
        if not -128 <= part <= 255:
            raise EncodingError("parameter %d is not a byte" % part)
        result.append(unsigned_byte(part))
    elif isinstance(part, str):
        result += wire_codecs.encode(WireType.string, part)
    elif isinstance(part, (bytes, bytearray, memoryview)):
        result += part
    elif isinstance(part, (list, tuple)):
        for p in part:
            _flatten(p, result)
    else:
        raise EncodingError("parameter %r of type %s is not representable as bytes" % (part, type(part).__name__))


def encode_params(*parts) -> bytes:
    """
    Flattens command parameters into a contiguous byte sequence, preserving order.

    >>> encode_params(3, True, [1, 2], b'\\x04', -1)
    b'\\x03\\x01\\x01\\x02\\x04\\xff'
    """
    result = bytearray()
    _flatten(parts, result)
    return bytes(result)
