import pytest
import os
import json
from unittest.mock import patch, MagicMock
from tunnelguard.utils.files import ExclusiveLock, atomic_write, write_private
from tunnelguard.utils.http import get_standard_client
from tunnelguard.errors import ProvisioningLockedError

def test_atomic_write(tmp_path):
    target = tmp_path / "nested" / "test.json"
    data = {"key": "value"}
    atomic_write(target, json.dumps(data))

    assert target.exists()
    assert json.loads(target.read_text()) == data
    assert target.stat().st_mode & 0o777 == 0o644
    assert [p.name for p in target.parent.iterdir()] == ["test.json"]

def test_write_private_mode(tmp_path):
    target = write_private(tmp_path / "server.key", b"key material")

    assert target.read_bytes() == b"key material"
    assert target.stat().st_mode & 0o777 == 0o600

def test_atomic_write_failure_leaves_no_temp(tmp_path):
    target = tmp_path / "server.conf"
    with patch("os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            atomic_write(target, "port 1194\n")

    assert list(tmp_path.iterdir()) == []

def test_lock_is_exclusive(tmp_path):
    lock_path = tmp_path / ".lock"
    with ExclusiveLock(lock_path) as lock:
        assert lock.held
        assert lock_path.read_text() == str(os.getpid())
        with pytest.raises(ProvisioningLockedError) as exc_info:
            ExclusiveLock(lock_path).acquire()
        assert exc_info.value.details["owner_pid"] == os.getpid()

    assert not lock_path.exists()

def test_stale_lock_is_reclaimed(tmp_path):
    lock_path = tmp_path / ".lock"
    lock_path.write_text("999999999")

    with ExclusiveLock(lock_path) as lock:
        assert lock.held
        assert lock_path.read_text() == str(os.getpid())

@patch("requests.Session.get")
def test_standard_http_client(mock_get):
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.text = "198.51.100.7\n"
    mock_get.return_value = mock_response

    client = get_standard_client()
    res = client.get_text("https://api.ipify.org", timeout=3)

    assert res == "198.51.100.7"
    mock_get.assert_called_once()
    assert mock_get.call_args[0][0] == "https://api.ipify.org"
    assert mock_get.call_args[1]["timeout"] == 3

@patch("requests.Session.get")
def test_standard_http_client_error(mock_get):
    mock_response = MagicMock()
    mock_response.status_code = 500
    mock_response.text = "Internal Server Error"
    import requests
    mock_get.side_effect = requests.exceptions.HTTPError(response=mock_response)

    client = get_standard_client()
    assert client.get_text("https://ifconfig.me") is None

@patch("requests.Session.get")
def test_standard_http_client_network_error(mock_get):
    import requests
    mock_get.side_effect = requests.exceptions.ConnectTimeout("timed out")

    assert get_standard_client().get_text("https://api.seeip.org") is None

def test_settings_env_prefix(monkeypatch):
    from tunnelguard.utils.config import get_settings

    monkeypatch.setenv("TNG_DEFAULT_PORT", "443")
    monkeypatch.setenv("TNG_DISCOVERY_ENDPOINTS", '["https://api.ipify.org"]')
    monkeypatch.setenv("TNG_AUTO_INSTALL", "true")

    settings = get_settings()

    assert settings.DEFAULT_PORT == 443
    assert settings.DISCOVERY_ENDPOINTS == ["https://api.ipify.org"]
    assert settings.AUTO_INSTALL is True
    assert settings.INSTALL_ROOT == "/etc/openvpn"

def test_provision_config_from_settings(monkeypatch):
    from tunnelguard.schemas.provision import DnsMode, ProvisionConfig, TunnelProtocol
    from tunnelguard.utils.config import get_settings

    monkeypatch.setenv("TNG_DEFAULT_PROTOCOL", "tcp")
    config = ProvisionConfig.from_settings(get_settings(), endpoint="vpn.example.com", dns_mode="external")

    assert config.protocol == TunnelProtocol.TCP
    assert config.dns_mode == DnsMode.EXTERNAL
    assert config.subnet_cidr == "10.8.0.0/24"
    assert config.gateway_address == "10.8.0.1"

def test_empty_lock_file_is_reclaimed(tmp_path):
    """A session that died before writing its PID leaves an empty file."""
    lock_path = tmp_path / ".lock"
    lock_path.write_text("")

    with ExclusiveLock(lock_path) as lock:
        assert lock.held
        assert lock_path.read_text() == str(os.getpid())

def test_stale_lock_claimed_by_one_session_only(tmp_path):
    lock_path = tmp_path / ".lock"
    lock_path.write_text("999999999")
    first, second = ExclusiveLock(lock_path), ExclusiveLock(lock_path)

    first.acquire()
    try:
        with pytest.raises(ProvisioningLockedError):
            second.acquire()
        assert first.held and not second.held
        assert lock_path.read_text() == str(os.getpid())
    finally:
        first.release()

def test_lock_retries_when_file_replaced(tmp_path):
    """A lock taken on a file the previous owner just unlinked is retried on the new file."""
    import fcntl

    lock_path = tmp_path / ".lock"
    real_flock = fcntl.flock
    calls = []

    def releasing_owner(fd, op):
        calls.append(fd)
        if len(calls) == 1:
            lock_path.unlink()
            lock_path.write_text("")
        return real_flock(fd, op)

    with patch("tunnelguard.utils.files.fcntl.flock", side_effect=releasing_owner):
        lock = ExclusiveLock(lock_path)
        lock.acquire()

    assert len(calls) == 2
    assert lock_path.read_text() == str(os.getpid())
    lock.release()
    assert not lock_path.exists()
