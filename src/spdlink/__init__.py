"""

SPD reader/writer bridge connections

- Conduit: a bi-directional byte stream to the device. SerialConduit over a serial port,
  MemoryConduit in-process for simulation and tests.
- Frames: the device sends two kinds of frame. Alerts ('@' + code) arrive unsolicited,
  responses ('&' + length + body + checksum) answer commands.
- FrameReceiver: the single reader of a conduit. Routes alerts to the AlertDispatcher and
  responses to the command waiting for them.
- CommandCorrelator: sends one command at a time and waits for its response. The protocol carries
  no request identifier, so at most one command per device is in flight.
- SpdDevice: the connection lifecycle (open, await ready, handshake test, connected) and the
  device operations. A monitor tears the connection down if the conduit closes.
- eeprom: reading, writing and write protection of the SPD EEPROM through a device.
- config: layered configuration files for the serial settings.


## Threading

Each connected device runs:

- a frame receiver thread, which blocks reading the conduit
- a monitor thread, which polls the conduit state
- a short-lived thread per alert, so handling an alert may itself execute commands

Commands may be executed from any thread; they are serialized per device.
"""
