from unittest.mock import MagicMock

import paramiko

from conftest import wait_for
from tunnelchain.keepalive import KeepaliveDriver


def test_keepalive_pings_until_stopped():
    session = MagicMock()
    session.keepalive.return_value = True
    driver = KeepaliveDriver(session, 0.01).start()

    assert wait_for(lambda: session.keepalive.call_count >= 3)
    driver.stop()
    driver.join(2)
    assert not driver.running
    session.close.assert_not_called()


def test_keepalive_stops_when_unanswered():
    session = MagicMock()
    session.keepalive.side_effect = [True, False, True]
    driver = KeepaliveDriver(session, 0.01).start()

    driver.join(2)
    assert not driver.running
    assert session.keepalive.call_count == 2
    session.close.assert_not_called()


def test_keepalive_stops_on_error():
    session = MagicMock()
    session.keepalive.side_effect = paramiko.SSHException("transport gone")
    driver = KeepaliveDriver(session, 0.01).start()

    driver.join(2)
    assert not driver.running
    session.keepalive.assert_called_once()
    session.close.assert_not_called()


def test_keepalive_stop_before_first_tick():
    session = MagicMock()
    driver = KeepaliveDriver(session, 30).start()
    driver.stop()
    driver.join(2)
    assert not driver.running
    session.keepalive.assert_not_called()
