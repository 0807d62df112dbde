"""
Finds the serial ports that have an SPD reader/writer device attached.
"""
import logging
from concurrent.futures import ThreadPoolExecutor

from spdlink.conduit.serial_conduit import SerialSettings, serial_ports
from spdlink.connector.device import SpdDevice
from spdlink.protocol.errors import DeviceError

logger = logging.getLogger(__name__)


def probe_port(port, settings: SerialSettings=None, device_factory=SpdDevice.serial) -> bool:
    """
    Connects to the port and disconnects again.
    :return: True if a device on the port completed the handshake.
    """
    device = device_factory(port, settings)
    try:
        return device.connect()
    except DeviceError as e:
        logger.debug("no device found on %s: %s", port, e)
        return False
    finally:
        device.disconnect()


def find_devices(settings: SerialSettings=None, ports=None, device_factory=SpdDevice.serial):
    """
    Probes serial ports in parallel for devices that complete the handshake.

    :param settings: the serial settings used to probe each port.
    :param ports: the port names to probe. Defaults to all serial ports on the system.
    :param device_factory: creates a device from a port name and settings.
    :return: a list of the names of ports with a responding device, in the order given.
    """
    ports = list(serial_ports() if ports is None else ports)
    if not ports:
        return []
    with ThreadPoolExecutor(max_workers=len(ports), thread_name_prefix='find-devices') as executor:
        found = list(executor.map(lambda p: probe_port(p, settings, device_factory), ports))
    result = [p for p, ok in zip(ports, found) if ok]
    logger.info("found devices on %s", ', '.join(result) or 'no ports')
    return result
