"""
Reads, writes and write-protects the SPD EEPROM on a memory module, through a connected SpdDevice.

Each function addresses the EEPROM at the device's i2c_address. Offsets wider than a byte are sent
as MSB and LSB parameters.
"""
import logging

from spdlink.codecs import WireType
from spdlink.protocol.commands import Commands

logger = logging.getLogger(__name__)

# the most bytes the firmware returns in one page read
MAX_READ_COUNT = 32

# the most bytes the firmware writes in one page write
PAGE_SIZE = 16


class Spd5Register(object):
    """ SPD5 hub registers. """
    mr11 = 11   # I2C legacy mode device configuration, selects the EEPROM page
    mr12 = 12   # write protection for blocks 0-7
    mr13 = 13   # write protection for blocks 8-15
    mr48 = 48   # device status


def validate_eeprom_address(address) -> bool:
    """
    >>> validate_eeprom_address(0x50)
    True
    >>> validate_eeprom_address(0x57)
    True
    >>> validate_eeprom_address(0x48)
    False
    """
    return address >> 3 == 0b1010


def validate_pmic_address(address) -> bool:
    """
    >>> validate_pmic_address(0x48)
    True
    >>> validate_pmic_address(0x50)
    False
    """
    return address >> 3 in (0b1001, 0b1000, 0b1100)


def _check_offset(device, offset):
    size = device.max_payload_size
    if offset < 0 or (size and offset > size):
        raise IndexError("offset 0x%04X is outside the %d byte EEPROM" % (offset, size))


def _check_page(data):
    return 0 < len(data) <= PAGE_SIZE


def read(device, offset, count=1) -> bytes:
    """
    Reads count bytes starting at offset.
    :raises ValueError: if count is not between 1 and 32
    :raises IndexError: if the offset is past the end of the EEPROM
    """
    if not 0 < count <= MAX_READ_COUNT:
        raise ValueError("count must be between 1 and %d, not %d" % (MAX_READ_COUNT, count))
    _check_offset(device, offset)
    return device.execute(Commands.spd_read_page, device.i2c_address, offset >> 8, offset & 0xFF, count)


def read_byte(device, offset) -> int:
    return read(device, offset, 1)[0]


def write(device, offset, data) -> bool:
    """
    Writes a page of up to 16 bytes at offset.
    :return: True if the device wrote the page. False if data is empty or longer than a page.
    """
    data = bytes(data)
    _check_offset(device, offset)
    if not _check_page(data):
        return False
    return device.execute(Commands.spd_write_page, device.i2c_address, offset >> 8, offset & 0xFF, len(data), data,
                          wire_type=WireType.boolean)


def write_byte(device, offset, value) -> bool:
    _check_offset(device, offset)
    return device.execute(Commands.spd_write_byte, device.i2c_address, offset >> 8, offset & 0xFF, value,
                          wire_type=WireType.boolean)


def verify(device, offset, data) -> bool:
    """ determines if the EEPROM contents at offset match data. """
    if isinstance(data, int):
        return read_byte(device, offset) == data
    data = bytes(data)
    return read(device, offset, len(data)) == data


def update(device, offset, data) -> bool:
    """
    Writes data only where it differs from the EEPROM contents.
    :return: True if the EEPROM holds data afterwards.
    """
    if isinstance(data, int):
        return verify(device, offset, data) or write_byte(device, offset, data)
    data = bytes(data)
    if not _check_page(data):
        return False
    return verify(device, offset, data) or write(device, offset, data)


def write_test(device, offset) -> bool:
    """ :return: True if the byte at offset is writable. """
    return device.execute(Commands.spd_write_test, device.i2c_address, offset >> 8, offset & 0xFF,
                          wire_type=WireType.boolean)


def set_rswp(device, block) -> bool:
    """ enables reversible write protection on a block. """
    return device.execute(Commands.rswp, device.i2c_address, block, True, wire_type=WireType.boolean)


def get_rswp(device, block) -> bool:
    """ :return: True if the block is write protected, or the device does not support RSWP. """
    return device.execute(Commands.rswp, device.i2c_address, block, Commands.get, wire_type=WireType.boolean)


def clear_rswp(device) -> bool:
    """ clears reversible write protection on all blocks. """
    result = device.execute(Commands.rswp, device.i2c_address, 0, False, wire_type=WireType.boolean)
    logger.info("clear rswp on %r at 0x%02X: %s", device, device.i2c_address, result)
    return result


def set_pswp(device) -> bool:
    """ permanently write protects the EEPROM. This can't be undone. """
    result = device.execute(Commands.pswp, device.i2c_address, True, wire_type=WireType.boolean)
    logger.info("set pswp on %r at 0x%02X: %s", device, device.i2c_address, result)
    return result


def get_pswp(device) -> bool:
    """ :return: True if the EEPROM is permanently write protected. """
    return device.execute(Commands.pswp, device.i2c_address, Commands.get, wire_type=WireType.boolean)
