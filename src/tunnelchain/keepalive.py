import logging
import threading

import paramiko

from tunnelchain.logger import logger as default_logger


class KeepaliveDriver:
    """Pings one hop session at a fixed interval from a daemon thread.

    The loop ends the first time the hop does not answer or the request
    raises. It never closes the session; a dead link shows up on the next
    real operation.
    """

    def __init__(self, session, interval: float, logger: logging.Logger = default_logger):
        self.session = session
        self.interval = interval
        self.logger = logger
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"keepalive-{session.hop}", daemon=True
        )

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "KeepaliveDriver":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout=None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                alive = self.session.keepalive()
            except (OSError, EOFError, paramiko.SSHException) as e:
                self.logger.debug(f"Keepalive to {self.session.hop} failed: {e}")
                return
            if not alive:
                self.logger.debug(f"Keepalive to {self.session.hop} got no answer, stopping.")
                return
