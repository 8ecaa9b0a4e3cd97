import logging
import threading
from concurrent.futures import Future

logger = logging.getLogger(__name__)


class SingleFlight:
    """Coalesces concurrent calls sharing a key into one execution.

    The first caller for a key runs the function; callers arriving while it
    is still running block on the same Future and get its result or its
    exception. Once the call settles the key is forgotten, so the next call
    runs again.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: dict[str, Future] = {}

    def do(self, key, fn):
        with self.lock:
            future = self.calls.get(key)
            leader = future is None
            if leader:
                future = Future()
                self.calls[key] = future

        if not leader:
            logger.debug("Joining in-flight call: %s", key)
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self.lock:
                self.calls.pop(key, None)
