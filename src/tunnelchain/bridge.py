"""Bidirectional splice between two connections with half-close semantics."""

import logging
import threading

import paramiko

from tunnelchain.constants import COPY_BUFFER_SIZE
from tunnelchain.logger import logger as default_logger


def _pump(src, dst, label: str, logger: logging.Logger) -> None:
    """Copies src to dst until EOF, then half-closes dst."""
    total = 0
    try:
        while True:
            data = src.recv(COPY_BUFFER_SIZE)
            if not data:
                break
            dst.sendall(data)
            total += len(data)
    except (OSError, EOFError, paramiko.SSHException) as e:
        logger.debug(f"Bridge {label} stopped: {e}")
    finally:
        try:
            dst.close_write()
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug(f"Bridge {label} half-close failed: {e}")
    logger.debug(f"Bridge {label} finished after {total} bytes")


def bridge(a, b, logger: logging.Logger = default_logger) -> None:
    """Splices a and b until both directions reach EOF, then closes both.

    Each direction only shuts down the write side of its destination, so data
    still flowing the other way is not cut off. Blocks until both directions
    are done.
    """
    directions = [
        threading.Thread(target=_pump, args=(a, b, "a->b", logger), daemon=True),
        threading.Thread(target=_pump, args=(b, a, "b->a", logger), daemon=True),
    ]
    for direction in directions:
        direction.start()
    for direction in directions:
        direction.join()
    for conn in (a, b):
        try:
            conn.close()
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"Bridge close failed: {e}")
