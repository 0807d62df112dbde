"""
Handles alert frames: unsolicited notifications from the device.
"""
import datetime
import logging
import threading

from spdlink.protocol.commands import Alerts
from spdlink.protocol.frames import AlertFrame
from spdlink.support.events import EventSource

logger = logging.getLogger(__name__)


class AlertEvent:
    """ An alert received from a device. """

    def __init__(self, device, code, timestamp=None):
        self.device = device
        self.code = code
        self.timestamp = timestamp or datetime.datetime.now()

    @property
    def name(self):
        return chr(self.code)

    def __repr__(self):
        return "AlertEvent(%r, code=%r, timestamp=%s)" % (self.device, chr(self.code), self.timestamp)


class AlertDispatcher:
    """
    Handles each alert on its own short-lived thread, so the frame receiver is never blocked by
    subscribers or by the commands issued in response to an alert.

    :param device: the device reported as the source of alert events
    :param subscribers: the event source notified with an AlertEvent for each alert
    :param on_ready: called when the device signals it is ready
    :param on_address_change: called when the number of addresses on the I2C bus changes
    """

    def __init__(self, device, subscribers: EventSource, on_ready=None, on_address_change=None, log=logger):
        self.device = device
        self.subscribers = subscribers
        self.on_ready = on_ready
        self.on_address_change = on_address_change
        self.logger = log

    def dispatch(self, frame: AlertFrame):
        if frame.code not in Alerts.all:
            self.logger.warning("ignoring unknown alert %r", frame)
            return None
        t = threading.Thread(target=self.handle, args=(frame.code,), name='alert-%s' % chr(frame.code))
        t.daemon = True
        t.start()
        return t

    def handle(self, code):
        """ runs on the alert thread. Failures are logged and go no further. """
        try:
            self.subscribers.fire(AlertEvent(self.device, code))
        except Exception as e:
            self.logger.exception("alert subscriber failed: %s", e)

        try:
            if code in Alerts.address_change:
                if self.on_address_change:
                    self.on_address_change()
            elif code == Alerts.ready:
                if self.on_ready:
                    self.on_ready()
        except Exception as e:
            self.logger.exception("unable to handle alert %r: %s", chr(code), e)
