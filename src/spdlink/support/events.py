import threading


class EventSource(object):
    """
    A list of handlers that are called each time an event is fired.

    The handler list is guarded by its own lock so handlers can be added and removed
    while another thread is firing events. Handlers are invoked outside the lock,
    on the firing thread.
    """

    def __init__(self):
        self._handlers = []
        self._lock = threading.Lock()

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
        return self

    def handlers(self):
        with self._lock:
            return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        self._fire(*args, **kwargs)

    def fire_all(self, events):
        for e in events:
            self._fire(e)

    def _fire(self, *args, **kwargs):
        for handler in self.handlers():
            handler(*args, **kwargs)


class SafeEventSource(EventSource):
    """
    An event source where a failing handler does not prevent the remaining handlers from
    being called. Exceptions are passed to the error handler, which logs them by default.
    """

    def __init__(self, log):
        super().__init__()
        self.logger = log

    def _fire(self, *args, **kwargs):
        for handler in self.handlers():
            try:
                handler(*args, **kwargs)
            except Exception as e:
                self.exception_handler(handler, e)

    def exception_handler(self, handler, e):
        self.logger.exception("event handler %r failed: %s", handler, e)
