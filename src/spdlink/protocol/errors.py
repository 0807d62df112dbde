"""
Errors raised by the device protocol engine.

All errors derive from DeviceError, which carries optional diagnostic context: the endpoint
(e.g. serial port) the device is attached to, and the raw bytes of the command that failed.
The context is filled in by the layer that knows it, as the error propagates to the caller.
"""


class DeviceError(Exception):
    """ Base class for errors communicating with the bridge device. """

    def __init__(self, message='', endpoint=None, command=None):
        super().__init__(message)
        self.message = message
        self.endpoint = endpoint
        self.command = bytes(command) if command is not None else None

    @property
    def opcode(self):
        """ the opcode of the failed command, or None if no command was involved. """
        return self.command[0] if self.command else None

    def add_context(self, endpoint=None, command=None):
        """ Fills in any context not already known and returns this error. """
        if self.endpoint is None:
            self.endpoint = endpoint
        if self.command is None and command is not None:
            self.command = bytes(command)
        return self

    def __str__(self):
        context = []
        if self.endpoint is not None:
            context.append("endpoint %s" % self.endpoint)
        if self.command:
            context.append("command 0x%s" % self.command.hex().upper())
        return self.message if not context else "%s (%s)" % (self.message, ", ".join(context))


class EncodingError(DeviceError, ValueError):
    """ A command parameter cannot be represented as bytes. """


class DecodeError(DeviceError, ValueError):
    """ A response body cannot be decoded as the requested wire type. """


class ProtocolError(DeviceError):
    """ The device did not respond according to the protocol. """


class FramingError(ProtocolError):
    """ The byte stream does not start with a recognised frame header. The stream is out of sync. """


class ChecksumMismatch(ProtocolError):
    """ The response body does not match the additive checksum sent with it. """


class UnexpectedFrame(ProtocolError):
    """ A frame of the wrong kind was delivered to a waiting command. """


class ResponseTimeoutError(ProtocolError, TimeoutError):
    """ No response frame was received within the configured time. """


class CommandCancelled(ProtocolError):
    """ The connection was closed while the command was waiting for its response. """
