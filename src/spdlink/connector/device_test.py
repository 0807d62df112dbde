import threading
import time
import unittest
from unittest.mock import Mock

import timeout_decorator
from hamcrest import assert_that, calling, contains_exactly, instance_of, is_, none, raises

from spdlink.conduit.base import TransportError
from spdlink.conduit.serial_conduit import SerialConduitFactory, SerialSettings
from spdlink.connector.base import ConnectionLostEvent, ConnectionState, ConnectorConnectedEvent, \
    ConnectorDisconnectedEvent, HandshakeFailedError, NotConnectedError
from spdlink.connector.device import ConnectionMonitor, SpdDevice
from spdlink.eeprom import Spd5Register
from spdlink.protocol.commands import Alerts, ClockMode, Commands, RswpSupport
from spdlink.protocol.errors import ChecksumMismatch, EncodingError, ResponseTimeoutError
from spdlink.test.firmware import SimulatedFirmware, simulated_device
from spdlink.test.helpers import debug_timeout, wait_until

class SpdDeviceTestCase(unittest.TestCase):
    """ connects a device to simulated firmware before each test. """

    def setUp(self):
        self.firmware = SimulatedFirmware()
        self.device, _ = simulated_device(self.firmware)
        self.events = []
        self.device.events.add(self.events.append)
        self.device.connect()

    def tearDown(self):
        self.device.disconnect()

class ConnectTest(unittest.TestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_connect(self):
        device, firmware = simulated_device()
        events = []
        device.events.add(events.append)
        assert_that(device.connect(), is_(True))
        try:
            assert_that(device.connected, is_(True))
            assert_that(device.ready, is_(True))
            assert_that(device.state, is_(ConnectionState.connected))
            assert_that(firmware.commands, is_([Commands.test]))
            assert_that(events, contains_exactly(instance_of(ConnectorConnectedEvent)))
            assert_that(device.bytes_sent, is_(1))
            assert_that(device.bytes_received, is_(2 + 4))
        finally:
            device.disconnect()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_connect_when_connected(self):
        device, firmware = simulated_device()
        device.connect()
        try:
            assert_that(device.connect(), is_(True))
            assert_that(firmware.commands, is_([Commands.test]))
        finally:
            device.disconnect()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_no_ready_alert(self):
        device, firmware = simulated_device(SimulatedFirmware(ready=False), timeout=0.1)
        assert_that(calling(device.connect), raises(HandshakeFailedError, "did not signal ready"))
        assert_that(device.state, is_(ConnectionState.disconnected))
        assert_that(firmware.conduit.open, is_(False))
        assert_that(firmware.commands, is_([]))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_test_command_fails(self):
        firmware = SimulatedFirmware()
        firmware.responses[Commands.test] = b'\x00'
        device, _ = simulated_device(firmware)
        assert_that(calling(device.connect), raises(HandshakeFailedError, "failed the test command"))
        assert_that(device.connected, is_(False))
        assert_that(firmware.conduit.open, is_(False))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_test_command_unanswered(self):
        firmware = SimulatedFirmware()
        firmware.drop = 1
        device, _ = simulated_device(firmware, timeout=0.1)
        try:
            device.connect()
            self.fail("expected the handshake to fail")
        except HandshakeFailedError as e:
            assert_that(e.__cause__, is_(instance_of(ResponseTimeoutError)))
            assert_that(e.endpoint, is_('simulated'))
        assert_that(firmware.conduit.open, is_(False))

    def test_conduit_cannot_be_opened(self):
        factory = Mock(side_effect=TransportError("no such port"))
        device = SpdDevice(factory, SerialSettings(), endpoint='COM9')
        try:
            device.connect()
            self.fail("expected TransportError")
        except TransportError as e:
            assert_that(e.endpoint, is_('COM9'))
        assert_that(device.state, is_(ConnectionState.disconnected))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_reconnect(self):
        device, firmware = simulated_device()
        device.connect()
        device.disconnect()
        assert_that(device.connect(), is_(True))
        try:
            assert_that(device.test(), is_(True))
            assert_that(device.bytes_sent, is_(2))
        finally:
            device.disconnect()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_reconnect_before_loss_is_noticed(self):
        device, firmware = simulated_device()
        events = []
        device.connect()
        device.events.add(events.append)
        firmware.conduit.close()
        assert_that(device.connect(), is_(True))
        try:
            time.sleep(ConnectionMonitor.poll_interval * 6)
            assert_that(device.connected, is_(True))
            assert_that(events[-1], is_(instance_of(ConnectorConnectedEvent)))
            assert_that(device.test(), is_(True))
        finally:
            device.disconnect()

    @timeout_decorator.timeout(debug_timeout(5))
    def test_loss_reported_by_replaced_monitor_is_ignored(self):
        device, firmware = simulated_device()
        device.connect()
        events = []
        device.events.add(events.append)
        try:
            device._connection_lost(Mock())
            assert_that(device.connected, is_(True))
            assert_that(events, is_([]))
        finally:
            device.disconnect()

    def test_serial(self):
        device = SpdDevice.serial('COM3', SerialSettings(baud_rate=9600))
        assert_that(device.endpoint, is_('COM3'))
        assert_that(device.conduit_factory, is_(instance_of(SerialConduitFactory)))
        assert_that(repr(device), is_('COM3:9600'))

    def test_repr_without_endpoint(self):
        assert_that(repr(SpdDevice(Mock())), is_('N/A'))

class DisconnectTest(unittest.TestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disconnect(self):
        device, firmware = simulated_device()
        events = []
        device.connect()
        device.events.add(events.append)
        assert_that(device.disconnect(), is_(True))
        assert_that(device.connected, is_(False))
        assert_that(device.ready, is_(False))
        assert_that(firmware.conduit.open, is_(False))
        assert_that(events, contains_exactly(instance_of(ConnectorDisconnectedEvent)))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disconnect_while_refresh_waits_for_response(self):
        firmware = SimulatedFirmware()
        device, _ = simulated_device(firmware, timeout=3.0)
        device.connect()
        firmware.drop = 1
        firmware.alert(Alerts.slave_inc)
        assert_that(wait_until(lambda: Commands.scan_bus in firmware.commands), is_(True))
        start = time.monotonic()
        device.disconnect()
        assert_that(time.monotonic() - start < 1, is_(True))
        assert_that(device.state, is_(ConnectionState.disconnected))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_disconnect_releases_waiting_command(self):
        firmware = SimulatedFirmware()
        device, _ = simulated_device(firmware, timeout=3.0)
        device.connect()
        firmware.drop = 1
        errors = []

        def run():
            try:
                device.scan()
            except NotConnectedError as e:
                errors.append(e)
        thread = threading.Thread(target=run)
        thread.start()
        assert_that(wait_until(lambda: Commands.scan_bus in firmware.commands), is_(True))
        start = time.monotonic()
        device.disconnect()
        thread.join(1)
        assert_that(time.monotonic() - start < 1, is_(True))
        assert_that(errors, contains_exactly(instance_of(NotConnectedError)))
        assert_that(errors[0].opcode, is_(Commands.scan_bus))

    def test_disconnect_when_not_connected(self):
        device, _ = simulated_device()
        assert_that(device.disconnect(), is_(False))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_commands_after_disconnect_are_not_sent(self):
        device, firmware = simulated_device()
        device.connect()
        device.disconnect()
        sent = len(firmware.received)
        assert_that(calling(device.test), raises(NotConnectedError))
        assert_that(len(firmware.received), is_(sent))

    def test_commands_before_connect(self):
        device, firmware = simulated_device()
        assert_that(calling(device.execute).with_args(Commands.scan_bus), raises(NotConnectedError))
        assert_that(firmware.conduit, is_(none()))

    def test_cached_state_requires_connection(self):
        device, _ = simulated_device()
        assert_that(calling(getattr).with_args(device, 'addresses'), raises(NotConnectedError))
        assert_that(calling(getattr).with_args(device, 'rswp_support'), raises(NotConnectedError))
        assert_that(calling(getattr).with_args(device, 'max_payload_size'), raises(NotConnectedError))

class ConnectionLostTest(SpdDeviceTestCase):

    @timeout_decorator.timeout(debug_timeout(5))
    def test_conduit_closed_by_device(self):
        self.firmware.conduit.close()
        assert_that(wait_until(lambda: self.device.state == ConnectionState.disconnected), is_(True))
        assert_that(wait_until(lambda: len(self.events) == 3), is_(True))
        assert_that(self.events, contains_exactly(instance_of(ConnectorConnectedEvent),
                                                  instance_of(ConnectionLostEvent),
                                                  instance_of(ConnectorDisconnectedEvent)))
        assert_that(calling(self.device.test), raises(NotConnectedError))

class ExecuteTest(SpdDeviceTestCase):

    def test_execute_raw(self):
        assert_that(self.device.execute(Commands.test), is_(b'\x01'))

    def test_encoding_error_sends_nothing(self):
        sent = len(self.firmware.received)
        assert_that(calling(self.device.execute).with_args(Commands.name, 300), raises(EncodingError))
        assert_that(len(self.firmware.received), is_(sent))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_timeout_then_success(self):
        self.firmware.drop = 1
        try:
            self.device.execute(Commands.test, timeout=0.05)
            self.fail("expected a timeout")
        except ResponseTimeoutError as e:
            assert_that(e.endpoint, is_('simulated'))
            assert_that(e.command, is_(b'\x03'))
        assert_that(self.device.test(), is_(True))
        assert_that(self.device.connected, is_(True))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_timeout_waits_for_configured_time(self):
        self.firmware.drop = 1
        start = time.monotonic()
        assert_that(calling(self.device.execute).with_args(Commands.test, timeout=1.0), raises(ResponseTimeoutError))
        elapsed = time.monotonic() - start
        assert_that(0.95 <= elapsed < 1.5, is_(True), "timed out after %.3fs" % elapsed)

    def test_checksum_mismatch(self):
        self.firmware.corrupt = 1
        assert_that(calling(self.device.test), raises(ChecksumMismatch))
        assert_that(self.device.test(), is_(True))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_concurrent_commands(self):
        self.firmware.delay = 0.002
        self.firmware.addresses = {0x50, 0x53}
        errors = []
        results = {}

        def run(n):
            try:
                if n % 2:
                    results[n] = self.device.scan()
                else:
                    results[n] = self.device.firmware_version
            except Exception as e:
                errors.append(e)
        threads = [threading.Thread(target=run, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert_that(errors, is_([]))
        for n, result in results.items():
            assert_that(result, is_((0x50, 0x53) if n % 2 else 20240115))
        assert_that(len(results), is_(20))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_alert_during_pending_command(self):
        alerts = []
        self.device.subscribe_alerts(alerts.append)
        self.firmware.delay = 0.1
        result = []
        t = threading.Thread(target=lambda: result.append(self.device.test()))
        t.start()
        wait_until(lambda: len(self.firmware.received) == 2)
        self.firmware.alert(Alerts.clock_inc)
        t.join()
        assert_that(result, is_([True]))
        assert_that(wait_until(lambda: len(alerts) == 1), is_(True))
        assert_that(alerts[0].code, is_(Alerts.clock_inc))
        assert_that(alerts[0].device, is_(self.device))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_unsubscribe_alerts(self):
        listener = Mock()
        self.device.subscribe_alerts(listener)
        self.device.unsubscribe_alerts(listener)
        self.firmware.alert(Alerts.clock_dec)
        assert_that(self.device.test(), is_(True))
        listener.assert_not_called()

class DeviceOperationsTest(SpdDeviceTestCase):

    def test_firmware_version(self):
        assert_that(self.device.firmware_version, is_(20240115))

    def test_name(self):
        assert_that(self.device.name, is_('SpdReaderWriter'))

    def test_set_name(self):
        assert_that(self.device.set_name(' Bench 2 '), is_(True))
        assert_that(self.firmware.received[-1].data, is_(b'\x04\x07Bench 2'))
        assert_that(self.device.name, is_('Bench 2'))

    def test_set_same_name(self):
        assert_that(self.device.set_name('SpdReaderWriter'), is_(False))

    def test_set_invalid_name(self):
        assert_that(calling(self.device.set_name).with_args(None), raises(ValueError))
        assert_that(calling(self.device.set_name).with_args('  '), raises(ValueError))
        assert_that(calling(self.device.set_name).with_args('x' * 17), raises(ValueError))

    def test_factory_reset(self):
        self.device.set_name('other')
        assert_that(self.device.factory_reset(), is_(True))
        assert_that(self.device.name, is_('SpdReaderWriter'))

    def test_scan(self):
        self.firmware.addresses = {0x50, 0x52, 0x57}
        assert_that(self.device.scan(), is_((0x50, 0x52, 0x57)))

    def test_scan_empty_bus(self):
        self.firmware.addresses = set()
        assert_that(self.device.scan(), is_(()))

    def test_i2c_clock(self):
        assert_that(self.device.i2c_clock, is_(ClockMode.standard))
        assert_that(self.device.set_i2c_clock(True), is_(True))
        assert_that(self.device.i2c_clock, is_(ClockMode.fast))

    def test_high_voltage(self):
        assert_that(self.device.high_voltage, is_(False))
        assert_that(self.device.set_high_voltage(True), is_(True))
        assert_that(self.device.high_voltage, is_(True))
        assert_that(self.device.reset_config_pins(), is_(True))
        assert_that(self.device.high_voltage, is_(False))

    def test_rswp_report(self):
        assert_that(self.device.get_rswp_report(), is_(RswpSupport.ddr3 | RswpSupport.ddr4))
        assert_that(self.device.supports_rswp(RswpSupport.ddr4), is_(True))
        assert_that(self.device.supports_rswp(RswpSupport.ddr4 | RswpSupport.ddr5), is_(False))
        assert_that(self.device.offline_mode, is_(False))

    def test_probe_address(self):
        assert_that(self.device.probe_address(), is_(True))
        assert_that(self.device.probe_address(0x51), is_(False))

    def test_probe_invalid_selected_address(self):
        self.device.i2c_address = 0x30
        sent = len(self.firmware.received)
        assert_that(self.device.probe_address(), is_(False))
        assert_that(len(self.firmware.received), is_(sent))

    def test_detect(self):
        assert_that(self.device.detect_ddr4(), is_(True))
        assert_that(self.device.detect_ddr5(), is_(False))
        assert_that(self.device.detect_ddr4(0x51), is_(False))

    def test_spd_size(self):
        assert_that(self.device.get_spd_size(), is_(512))
        assert_that(self.device.get_spd_size(0x51), is_(0))

    def test_i2c_address_sets_max_payload_size(self):
        assert_that(self.device.max_payload_size, is_(0))
        self.device.i2c_address = 0x50
        assert_that(self.device.i2c_address, is_(0x50))
        assert_that(self.device.max_payload_size, is_(512))

    def test_spd5_hub(self):
        assert_that(self.device.write_spd5_hub(Spd5Register.mr11, 1), is_(True))
        assert_that(self.device.read_spd5_hub(Spd5Register.mr11), is_(1))
        assert_that(self.device.write_spd5_hub(Spd5Register.mr12, 0x81), is_(True))
        assert_that(self.firmware.commands[-1], is_(Commands.spd5_hub_reg))
        assert_that(self.firmware.received[-2].data, is_(bytes([12, 0x50, 12, 1, 0x81])))

    def test_spd5_hub_write_not_verified(self):
        self.firmware.responses[Commands.spd5_hub_reg] = b'\x01'
        assert_that(self.device.write_spd5_hub(Spd5Register.mr13, 0x80), is_(False))

    def test_read_settings(self):
        assert_that(self.device.read_settings(2, 4), is_(b'\x02\x03\x04\x05'))
        assert_that(self.firmware.received[-1].data, is_(bytes([24, 0xFF, 0, 2, 0, 4])))

    def test_addresses_cached(self):
        assert_that(self.device.addresses, is_((0x50,)))
        self.firmware.addresses.add(0x51)
        assert_that(self.device.addresses, is_((0x50,)))
        assert_that(self.firmware.commands.count(Commands.scan_bus), is_(1))

    def test_rswp_support_cached(self):
        assert_that(self.device.rswp_support, is_(RswpSupport.ddr3 | RswpSupport.ddr4))
        assert_that(self.device.rswp_support, is_(RswpSupport.ddr3 | RswpSupport.ddr4))
        assert_that(self.firmware.commands.count(Commands.rswp_report), is_(1))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_address_change_alert_refreshes(self):
        assert_that(self.device.addresses, is_((0x50,)))
        self.firmware.addresses.add(0x51)
        self.firmware.alert(Alerts.slave_inc)
        assert_that(wait_until(lambda: Commands.rswp_report in self.firmware.commands), is_(True))
        assert_that(wait_until(lambda: self.device.addresses == (0x50, 0x51)), is_(True))

    @timeout_decorator.timeout(debug_timeout(5))
    def test_bus_emptied(self):
        self.firmware.addresses.clear()
        self.firmware.alert(Alerts.slave_dec)
        assert_that(wait_until(lambda: self.firmware.commands.count(Commands.scan_bus) == 1), is_(True))
        assert_that(wait_until(lambda: self.device.rswp_support == 0), is_(True))
        assert_that(self.device.i2c_address, is_(0))
