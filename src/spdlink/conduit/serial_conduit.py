"""
Implements a conduit over a serial port.
"""

import logging
import re

import serial
from serial import SerialException
from serial.tools import list_ports

from spdlink.conduit.base import Conduit, ConduitFactory, TransportError
from spdlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)

# baud rates supported by the bridge firmware
BAUD_RATES = (300, 600, 1200, 2400, 4800, 9600, 14400, 19200, 38400, 57600, 115200,
              230400, 250000, 460800, 500000, 1000000, 2000000)


class SerialSettings(ValueObject):
    """
    Line parameters and timeouts for a device connection.

    :param baud_rate: the serial baud rate, which must match the firmware.
    :param dtr: assert DTR when opening the port. This resets most Arduino boards.
    :param rts: assert RTS when opening the port.
    :param timeout: seconds to wait for the device to become ready, and for each command response.
    :param read_timeout: seconds a single read blocks. Bounds how quickly the receiver notices it is stopped.
    :param write_timeout: seconds a single write may block.
    """

    def __init__(self, baud_rate=115200, dtr=True, rts=True, timeout=10.0, read_timeout=0.1, write_timeout=1.0):
        self.baud_rate = baud_rate
        self.dtr = dtr
        self.rts = rts
        self.timeout = timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout


class SerialConduit(Conduit):
    """
    A conduit that provides comms via a serial port.
    """

    def __init__(self, ser: serial.Serial):
        super().__init__()
        self.ser = ser

    @property
    def target(self):
        return self.ser

    @property
    def open(self) -> bool:
        try:
            return self.ser.is_open
        except (SerialException, OSError):
            return False

    def close(self):
        try:
            self.ser.close()
        except (SerialException, OSError) as e:
            logger.warning("error closing serial port %s: %s", self.ser.port, e)

    @property
    def bytes_available(self):
        try:
            return self.ser.in_waiting
        except (SerialException, OSError):
            return 0

    def discard_buffers(self):
        try:
            if self.ser.in_waiting:
                self.ser.reset_input_buffer()
            if self.ser.out_waiting:
                self.ser.reset_output_buffer()
        except (SerialException, OSError) as e:
            raise TransportError("unable to clear %s buffers" % self.ser.port) from e

    def flush(self):
        """ flushing locks up if the serial port is disconnected during the flush, so writes rely on
            the write timeout instead. """

    def _read(self, count):
        try:
            return self.ser.read(count)
        except (SerialException, OSError) as e:
            raise TransportError("unable to read from %s" % self.ser.port) from e

    def _write(self, data):
        try:
            self.ser.write(data)
        except (SerialException, OSError) as e:
            raise TransportError("unable to write to %s" % self.ser.port) from e


class SerialConduitFactory(ConduitFactory):
    """
    Opens a serial port with the given settings each time it is called.
    """

    def __init__(self, port, settings: SerialSettings=None):
        self.port = port
        self.settings = settings or SerialSettings()

    def _create_serial(self):
        s = self.settings
        ser = serial.Serial()
        ser.port = self.port
        ser.baudrate = s.baud_rate
        ser.timeout = s.read_timeout
        ser.write_timeout = s.write_timeout
        ser.dtr = s.dtr
        ser.rts = s.rts
        return ser

    def __call__(self):
        ser = self._create_serial()
        try:
            ser.open()
        except (SerialException, OSError) as e:
            raise TransportError("unable to open serial port %s" % self.port, endpoint=self.port) from e
        logger.info("opened serial port %s at %d baud", self.port, self.settings.baud_rate)
        return SerialConduit(ser)


def serial_conduit_factory(port, settings: SerialSettings=None):
    """
    Creates a factory function that opens a conduit on the serial port.
    :return: a factory for serial conduits
    """
    return SerialConduitFactory(port, settings)


arduino_devices = {
    (r"%mega2560\.name%.*", r"USB VID\:PID=2341\:0010.*"): "Arduino Mega2560",
    (r"Arduino.*Leonardo.*", r"USB VID\:PID=2341\:8036.*"): "Arduino Leonardo",
    (r"Arduino Uno.*", r"USB VID:PID=2341:0043.*"): "Arduino Uno",
    (r"Arduino Nano Every.*", r"USB VID:PID=2341:0058.*"): "Arduino Nano Every",
}

usb_serial_bridges = {
    (r".*CH340.*", r"USB VID:PID=1A86:7523.*"): "CH340 USB serial",
    (r".*FT232R.*", r"USB VID:PID=0403:6001.*"): "FTDI FT232R USB serial",
}

known_devices = dict((k, v) for d in [arduino_devices, usb_serial_bridges] for k, v in d.items())


def matches(text, regex):
    """
    >>> bool(matches("A", "a"))
    True
    >>> bool(matches("A", "b"))
    False
    >>> bool(matches("USB VID:PID=1A86:7523 SER=5 LOCATION=20-5", "USB VID:PID=1a86:7523.*"))
    True
    """
    return re.match(regex, text, flags=re.IGNORECASE)


def is_recognised_device(p):
    """
    >>> is_recognised_device(("abc", "Blah", "USB VID:PID=2341:0043 SER=00000000050C"))
    True
    """
    port, name, desc = p
    for d in known_devices.keys():
        # under linux only the hardware description identifies the device
        if matches(desc, d[1]):
            return True
    return False


def find_recognised_device_ports(ports):
    for p in ports:
        if is_recognised_device(p):
            yield p


def serial_port_info():
    """
    :return: a tuple of serial port info tuples (port, name, desc)
    """
    return tuple(list_ports.comports())


def serial_ports():
    """
    Returns a generator for all available serial port device names.
    """
    for port in serial_port_info():
        yield port[0]


def detect_port(port):
    """
    attempts to detect the given serial port. If the port is not auto, it is returned as is.
    otherwise, the name of the first recognised port is returned.
    """
    if port == "auto":
        all_ports = serial_port_info()
        ports = tuple(find_recognised_device_ports(all_ports))
        if not ports:
            raise ValueError("Could not find a compatible device in available ports. %s" % repr(all_ports))
        return ports[0][0]
    return port
