"""
The command catalog understood by the bridge firmware, and the command request itself.

A command is sent as a single write of the opcode byte followed by its parameter bytes.
Multi-byte values such as EEPROM offsets are split by the caller into MSB and LSB parameters.
"""
from spdlink.codecs import encode_params
from spdlink.protocol.errors import EncodingError


class Commands(object):
    """Describes the command name and the corresponding opcode"""

    # modifiers
    disable = 0
    enable = 1
    get = 0xFF

    # diagnostics & info
    version = 2
    test = 3
    name = 4
    factory_reset = 5

    # control commands
    spd_read_page = 6
    spd_write_byte = 7
    spd_write_page = 8
    spd_write_test = 9
    ddr4_detect = 10
    ddr5_detect = 11
    spd5_hub_reg = 12
    size = 13
    scan_bus = 14
    bus_clock = 15
    probe_address = 16
    i2c_read = 17
    i2c_write = 18
    pin_control = 19
    pin_reset = 20
    rswp = 21
    pswp = 22
    rswp_report = 23
    eeprom = 24


def command_name(opcode):
    """
    >>> command_name(3)
    'test'
    >>> command_name(200)
    '0xC8'
    """
    for k, v in vars(Commands).items():
        if v == opcode and not k.startswith('_') and k not in ('disable', 'enable', 'get'):
            return k
    return "0x%02X" % opcode


class Alerts(object):
    """ Codes sent in alert frames. """
    ready = ord('!')
    slave_inc = ord('+')
    slave_dec = ord('-')
    clock_inc = ord('/')
    clock_dec = ord('\\')

    all = (ready, slave_inc, slave_dec, clock_inc, clock_dec)
    address_change = (slave_inc, slave_dec)


class ConfigPin(object):
    """ Configuration pins controlled by the device. """
    hv_switch = 0
    sa1_switch = 1


class RswpSupport(object):
    """ Bitmask of memory types for which the device supports reversible write protection. """
    ddr3 = 1 << 3
    ddr4 = 1 << 4
    ddr5 = 1 << 5


class ClockMode(object):
    """ I2C clock frequency in kHz. """
    fast = 400
    standard = 100


# SPD size in bytes indexed by the result of the size command
SPD_SIZES = (0, 256, 512, 1024)

# maximum length of the device name
NAME_LENGTH = 16


class Command:
    """
    A command request: the opcode followed by the flattened parameters.
    """

    def __init__(self, opcode, *params):
        self.data = encode_params(opcode, *params)

    @classmethod
    def from_bytes(cls, data):
        """ creates a command from pre-encoded bytes. """
        if not data:
            raise EncodingError("a command must have an opcode")
        return cls(bytes(data))

    @property
    def opcode(self) -> int:
        return self.data[0]

    @property
    def params(self) -> bytes:
        return self.data[1:]

    def to_stream(self, file):
        file.write(self.data)

    def __eq__(self, other):
        return isinstance(other, Command) and other.data == self.data

    def __hash__(self):
        return hash(self.data)

    def __repr__(self):
        return "Command(%s%s)" % (command_name(self.opcode), ''.join(', 0x%02X' % b for b in self.params))
