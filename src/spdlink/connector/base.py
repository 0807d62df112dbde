import logging
from abc import abstractmethod

from spdlink.protocol.errors import DeviceError
from spdlink.support.events import EventSource

logger = logging.getLogger(__name__)


class ConnectorError(DeviceError):
    """ Indicates an error condition with a connection. """


class NotConnectedError(ConnectorError):
    """ Indicates a connection is in the disconnected state when a connection is required. """


class HandshakeFailedError(ConnectorError):
    """ The device did not signal it was ready, or did not pass the test command, while connecting. """


class ConnectionState:
    """ The stages of a connection. """
    disconnected = 'disconnected'
    opening = 'opening'
    awaiting_ready = 'awaiting_ready'
    handshake_testing = 'handshake_testing'
    connected = 'connected'


class ConnectorEvent:
    """ base class for connector events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectorConnectedEvent(ConnectorEvent):
    """ The connector was connected. """


class ConnectorDisconnectedEvent(ConnectorEvent):
    """ The connector was disconnected. """


class ConnectionLostEvent(ConnectorEvent):
    """ The connection closed without being asked to. """


class Connector:
    """ A connector describes an endpoint to which a connection can be established. """

    def __init__(self):
        self.events = EventSource()

    @property
    @abstractmethod
    def endpoint(self):
        """ the endpoint that this connector reaches out to """
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        """
        Determines if this connector is connected to its underlying resource.
        :return: True if this connector is connected to it's underlying resource. False otherwise.
        :rtype: bool
        """
        raise NotImplementedError

    @abstractmethod
    def connect(self):
        """
        Connects this connector to the underlying resource.
        If the connection is already connected, this method returns silently.
        Raises ConnectorError if the connection cannot be established.
        """
        raise NotImplementedError

    @abstractmethod
    def disconnect(self):
        raise NotImplementedError

    def check_connected(self):
        if not self.connected:
            raise NotConnectedError("%s is not connected" % self.endpoint, endpoint=self.endpoint)


class ConnectorContextManager:
    """
    Opens the connector on entry, and closes it on exit.
    """

    def __init__(self, connector: Connector):
        self.connector = connector

    def __enter__(self):
        try:
            self.connector.connect()
            logger.debug("Connected device on %s", self.connector.endpoint)
        except DeviceError as e:
            logger.error("Unable to connect to device on %s - %s", self.connector.endpoint, e)
            raise
        return self.connector

    def __exit__(self, exc_type, exc_val, exc_tb):
        logger.debug("Disconnected device on %s", self.connector.endpoint)
        self.connector.disconnect()
