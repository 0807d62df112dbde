"""
A connection to an SPD reader/writer bridge device, and the operations it supports.

Connecting runs through these stages:

- opening: the conduit is opened and the frame receiver started
- awaiting_ready: waits for the device to send the ready alert
- handshake_testing: the test command must succeed
- connected: a monitor watches the conduit and tears the connection down if it closes

A failure at any stage tears down everything started so far.
"""
import logging
import threading

from spdlink.codecs import WireType, decode
from spdlink.conduit.base import Conduit
from spdlink.conduit.serial_conduit import SerialConduitFactory, SerialSettings
from spdlink.connector.base import ConnectionLostEvent, ConnectionState, Connector, ConnectorConnectedEvent, \
    ConnectorDisconnectedEvent, HandshakeFailedError, NotConnectedError
from spdlink.eeprom import Spd5Register, validate_eeprom_address, validate_pmic_address
from spdlink.protocol.alerts import AlertDispatcher
from spdlink.protocol.async_loop import AsyncLoop
from spdlink.protocol.commands import ClockMode, Command, Commands, ConfigPin, NAME_LENGTH, RswpSupport, SPD_SIZES
from spdlink.protocol.correlator import CommandCorrelator, PendingSlot
from spdlink.protocol.errors import CommandCancelled, DeviceError
from spdlink.protocol.receiver import FrameReceiver
from spdlink.support.events import SafeEventSource

logger = logging.getLogger(__name__)


class ConnectionMonitor(AsyncLoop):
    """
    Polls the conduit while connected. When the conduit closes unexpectedly, the device is told the
    connection was lost.
    """

    poll_interval = 0.05

    def __init__(self, device, conduit: Conduit, log=logger):
        super().__init__(self.poll, log=log, name='connection-monitor')
        self.device = device
        self.conduit = conduit

    def poll(self):
        if self.wait(self.poll_interval):
            return
        if not self.conduit.open and self.running():
            self.stop()
            self.device._connection_lost(self)


class SpdDevice(Connector):
    """
    An SPD reader/writer device attached through a conduit.

    :param conduit_factory: opens a new conduit to the device each time it is called.
    :param settings: line settings and timeouts.
    :param endpoint: identifies the device in log messages and errors, e.g. the serial port name.
    :param i2c_address: the address of the EEPROM used by operations that target a module.
    """

    def __init__(self, conduit_factory, settings: SerialSettings=None, endpoint=None, i2c_address=0):
        super().__init__()
        self.conduit_factory = conduit_factory
        self.settings = settings or SerialSettings()
        self._endpoint = endpoint
        self.alerts = SafeEventSource(logger)
        self._lock = threading.RLock()
        self._cache_lock = threading.RLock()
        self._state = ConnectionState.disconnected
        self._ready = threading.Event()
        self._slot = PendingSlot()
        self._dispatcher = AlertDispatcher(self, self.alerts, self._on_ready, self._on_address_change)
        self._conduit = None
        self._receiver = None
        self._monitor = None
        self._correlator = None
        self._addresses = None
        self._rswp_support = None
        self._max_payload_size = 0
        self._generation = 0
        self._i2c_address = i2c_address

    @classmethod
    def serial(cls, port, settings: SerialSettings=None, i2c_address=0):
        """ creates a device attached to the given serial port. """
        settings = settings or SerialSettings()
        return cls(SerialConduitFactory(port, settings), settings, endpoint=port, i2c_address=i2c_address)

    def __repr__(self):
        return "N/A" if not self._endpoint else "%s:%d" % (self._endpoint, self.settings.baud_rate)

    @property
    def endpoint(self):
        return self._endpoint

    @property
    def state(self):
        return self._state

    @property
    def connected(self):
        conduit = self._conduit
        return self._state == ConnectionState.connected and conduit is not None and conduit.open

    @property
    def ready(self):
        return self._ready.is_set()

    @property
    def bytes_sent(self):
        conduit = self._conduit
        return conduit.stats.bytes_sent if conduit else 0

    @property
    def bytes_received(self):
        conduit = self._conduit
        return conduit.stats.bytes_received if conduit else 0

    def subscribe_alerts(self, fn):
        """ registers fn to be called with an AlertEvent for each alert the device sends. """
        self.alerts.add(fn)

    def unsubscribe_alerts(self, fn):
        self.alerts.remove(fn)

    # lifecycle

    def connect(self):
        """
        Opens the conduit and performs the handshake.
        :return: True once connected.
        :raises TransportError: if the conduit cannot be opened
        :raises HandshakeFailedError: if the device is not ready in time or fails the test command
        """
        if self.connected:
            return True
        # stops the threads of a connection whose conduit closed before the monitor noticed
        self.disconnect()
        with self._lock:
            if self.connected:
                return True
            try:
                self._state = ConnectionState.opening
                self._open()

                self._state = ConnectionState.awaiting_ready
                if not self._ready.wait(self.settings.timeout):
                    raise HandshakeFailedError("device did not signal ready within %ss" % self.settings.timeout)

                self._state = ConnectionState.handshake_testing
                try:
                    passed = self.test()
                except DeviceError as e:
                    raise HandshakeFailedError("test command failed: %s" % e) from e
                if not passed:
                    raise HandshakeFailedError("device failed the test command")

                self._monitor = ConnectionMonitor(self, self._conduit)
                self._monitor.start()
                self._state = ConnectionState.connected
            except DeviceError as e:
                self.disconnect()
                raise e.add_context(endpoint=self.endpoint)

        logger.info("connected to %r", self)
        self.events.fire(ConnectorConnectedEvent(self))
        return True

    def _open(self):
        conduit = self.conduit_factory()
        conduit.stats.reset()
        self._ready.clear()
        self._slot.clear()
        self._conduit = conduit
        self._correlator = CommandCorrelator(conduit, self._slot, self.settings.timeout)
        self._receiver = FrameReceiver(conduit, self._slot.deliver, self._dispatcher.dispatch)
        self._receiver.start()

    def disconnect(self):
        """
        Stops the background threads, closes the conduit and invalidates cached device state.
        :return: False if there was nothing to disconnect.
        """
        with self._lock:
            if self._conduit is None and self._state == ConnectionState.disconnected:
                return False
            was_connected = self._state == ConnectionState.connected
            monitor, receiver, conduit = self._monitor, self._receiver, self._conduit
            self._monitor = self._receiver = self._conduit = self._correlator = None
            self._state = ConnectionState.disconnected
            self._ready.clear()
            self._slot.cancel()
            self._invalidate_capabilities()

        if monitor:
            monitor.stop()
        if receiver:
            receiver.stop()
        if conduit:
            conduit.close()
        logger.info("disconnected from %r", self)
        if was_connected:
            self.events.fire(ConnectorDisconnectedEvent(self))
        return True

    def _connection_lost(self, monitor):
        with self._lock:
            if monitor is not self._monitor:
                logger.debug("ignoring loss of a replaced connection to %r", self)
                return
        logger.warning("connection to %r lost", self)
        try:
            self.events.fire(ConnectionLostEvent(self))
        except Exception as e:
            logger.exception("connection lost handler failed: %s", e)
        self.disconnect()

    def _on_ready(self):
        self._ready.set()

    def _on_address_change(self):
        if self._correlator is not None:
            self.refresh_capabilities()

    # commands

    def execute_command(self, command: Command, timeout=None) -> bytes:
        """
        Sends the command and returns the body of the response.
        :raises NotConnectedError: if the device is not connected, in which case nothing is sent, or if it
            disconnects while the command waits for its response.
        """
        correlator, conduit = self._correlator, self._conduit
        if correlator is None or conduit is None or not conduit.open or self._state == ConnectionState.disconnected:
            raise NotConnectedError("%r is not connected" % self, endpoint=self.endpoint, command=command.data)
        try:
            return correlator.execute(command, timeout)
        except CommandCancelled as e:
            raise NotConnectedError("%r disconnected while executing the command" % self, endpoint=self.endpoint,
                                    command=command.data) from e
        except DeviceError as e:
            raise e.add_context(endpoint=self.endpoint)

    def execute(self, opcode, *params, wire_type=WireType.raw, timeout=None):
        """
        Executes a command and decodes the response body.

        :param opcode: the command to execute, one of the Commands values
        :param params: parameters, flattened to bytes. Values wider than a byte must be split by the caller.
        :param wire_type: the WireType to decode the response body as
        :param timeout: seconds to wait for the response. Defaults to the settings timeout.
        """
        return decode(self.execute_command(Command(opcode, *params), timeout), wire_type)

    def test(self) -> bool:
        """ checks the device responds properly to the test command. """
        return self.execute(Commands.test, wire_type=WireType.boolean)

    @property
    def firmware_version(self) -> int:
        return self.execute(Commands.version, wire_type=WireType.dword)

    @property
    def name(self) -> str:
        return self.execute(Commands.name, Commands.get, wire_type=WireType.string).strip()

    def set_name(self, name) -> bool:
        """
        Assigns a name to the device.
        :return: False if the device already has this name.
        """
        if name is None:
            raise ValueError("name is required")
        name = name.strip()
        if not name:
            raise ValueError("name can't be blank")
        if len(name) > NAME_LENGTH:
            raise ValueError("name can't be longer than %d characters" % NAME_LENGTH)
        if name == self.name:
            return False
        return self.execute(Commands.name, len(name), name, wire_type=WireType.boolean)

    def factory_reset(self) -> bool:
        return self.execute(Commands.factory_reset, wire_type=WireType.boolean)

    def scan(self):
        """
        Scans the I2C bus for EEPROMs.
        :return: a tuple of the addresses that responded
        """
        mask = self.execute(Commands.scan_bus, wire_type=WireType.byte)
        return tuple(0x50 + i for i in range(8) if mask & (1 << i))

    def set_i2c_clock(self, fast_mode: bool) -> bool:
        return self.execute(Commands.bus_clock, fast_mode, wire_type=WireType.boolean)

    @property
    def i2c_clock(self) -> int:
        """ the I2C clock in kHz """
        fast = self.execute(Commands.bus_clock, Commands.get, wire_type=WireType.boolean)
        return ClockMode.fast if fast else ClockMode.standard

    def set_config_pin(self, pin, state: bool) -> bool:
        return self.execute(Commands.pin_control, pin, state, wire_type=WireType.boolean)

    def get_config_pin(self, pin) -> bool:
        return self.execute(Commands.pin_control, pin, Commands.get, wire_type=WireType.boolean)

    def set_high_voltage(self, state: bool) -> bool:
        """ switches the high voltage needed to set or clear RSWP on pre-DDR5 modules. """
        return self.set_config_pin(ConfigPin.hv_switch, state)

    @property
    def high_voltage(self) -> bool:
        return self.get_config_pin(ConfigPin.hv_switch)

    def reset_config_pins(self) -> bool:
        return self.execute(Commands.pin_reset, wire_type=WireType.boolean)

    def probe_address(self, address=None) -> bool:
        """ checks a device responds at the address, by default the selected EEPROM address. """
        if address is None:
            address = self._i2c_address
            if not validate_eeprom_address(address):
                return False
        return self.execute(Commands.probe_address, address, wire_type=WireType.boolean)

    def get_rswp_report(self) -> int:
        """ :return: a RswpSupport bitmask of the memory types the device can write protect """
        return self.execute(Commands.rswp_report, wire_type=WireType.byte)

    def supports_rswp(self, mask) -> bool:
        return (self.get_rswp_report() & mask) == mask

    @property
    def offline_mode(self) -> bool:
        return self.supports_rswp(RswpSupport.ddr5)

    def detect_ddr4(self, address=None) -> bool:
        address = self._i2c_address if address is None else address
        return self.execute(Commands.ddr4_detect, address, wire_type=WireType.boolean)

    def detect_ddr5(self, address=None) -> bool:
        address = self._i2c_address if address is None else address
        return self.execute(Commands.ddr5_detect, address, wire_type=WireType.boolean)

    def read_spd5_hub(self, register) -> int:
        return self.execute(Commands.spd5_hub_reg, self._i2c_address, register, Commands.get,
                            wire_type=WireType.byte)

    def write_spd5_hub(self, register, value) -> bool:
        """ writes an SPD5 hub register. Writes to MR12 and MR13 are verified by reading back. """
        result = self.execute(Commands.spd5_hub_reg, self._i2c_address, register, Commands.enable, value,
                              wire_type=WireType.boolean)
        if register in (Spd5Register.mr12, Spd5Register.mr13):
            return result and self.read_spd5_hub(register) == value
        return result

    def get_spd_size(self, address=None) -> int:
        """ :return: the size in bytes of the SPD EEPROM, or 0 if unknown """
        address = self._i2c_address if address is None else address
        index = self.execute(Commands.size, address, wire_type=WireType.byte)
        return SPD_SIZES[index] if index < len(SPD_SIZES) else 0

    def read_settings(self, offset, length) -> bytes:
        """ reads from the device's own EEPROM, where the firmware keeps its settings. """
        return self.execute(Commands.eeprom, Commands.get, offset >> 8, offset & 0xFF, length >> 8, length & 0xFF)

    # cached capabilities
    #
    # Values are fetched without holding the cache lock, so teardown never waits on the device. They are
    # stored only if the cache was not invalidated in the meantime.

    @property
    def i2c_address(self):
        return self._i2c_address

    @i2c_address.setter
    def i2c_address(self, address):
        self._i2c_address = address
        if self.connected and (validate_eeprom_address(address) or validate_pmic_address(address)):
            generation = self._generation
            size = self.get_spd_size(address)
            with self._cache_lock:
                if generation == self._generation:
                    self._max_payload_size = size

    @property
    def addresses(self):
        """ the addresses found on the I2C bus, scanned when first needed and whenever the device reports a change. """
        self.check_connected()
        addresses = self._addresses
        if addresses is None:
            generation = self._generation
            addresses = self.scan()
            with self._cache_lock:
                if generation == self._generation and self._addresses is None:
                    self._store_addresses(addresses)
        return addresses

    @property
    def rswp_support(self) -> int:
        """ the RswpSupport bitmask, fetched when first needed and whenever the device reports a bus change. """
        self.check_connected()
        support = self._rswp_support
        if support is None:
            generation = self._generation
            support = self.get_rswp_report()
            with self._cache_lock:
                if generation == self._generation and self._rswp_support is None:
                    self._rswp_support = support
        return support

    @property
    def max_payload_size(self) -> int:
        """ the SPD size of the EEPROM at i2c_address, or 0 if not known """
        self.check_connected()
        return self._max_payload_size

    def refresh_capabilities(self):
        """ rescans the bus and refetches the write protection capabilities. The last refresh to finish wins. """
        generation = self._generation
        addresses = self.scan()
        support = self.get_rswp_report() if addresses else 0
        with self._cache_lock:
            if generation != self._generation:
                return
            self._store_addresses(addresses)
            self._rswp_support = support
        logger.info("%r addresses %s, rswp support 0x%02X", self,
                    ', '.join('0x%02X' % a for a in addresses) or 'none', support)

    def _store_addresses(self, addresses):
        self._addresses = addresses
        if not addresses:
            self._i2c_address = 0
            self._max_payload_size = 0

    def _invalidate_capabilities(self):
        with self._cache_lock:
            self._generation += 1
            self._addresses = None
            self._rswp_support = None
            self._max_payload_size = 0
