import os
import signal
import socket
import threading
import time
from contextlib import closing

import pytest

from rrlb.core.config import DEFAULT_BACKENDS, load_settings
from rrlb.core.errors import ConfigurationError
from rrlb.main import main
from support import free_port


def test_defaults_without_environment():
    settings = load_settings({})

    assert settings.port == 8080
    assert settings.backends == DEFAULT_BACKENDS
    assert settings.request_timeout_s == 5.0
    assert settings.shutdown_grace_s == 5.0
    assert settings.forward_hop_headers is False
    assert settings.metrics_port is None


def test_values_from_environment():
    settings = load_settings({
        "HOST": "127.0.0.1",
        "PORT": "9090",
        "BACKENDS": " http://a.test:1 , http://b.test:2 ,",
        "REQUEST_TIMEOUT_S": "0.25",
        "FORWARD_HOP_HEADERS": "yes",
        "METRICS_PORT": "9100",
    })

    assert settings.host == "127.0.0.1"
    assert settings.port == 9090
    assert settings.backends == ["http://a.test:1", "http://b.test:2"]
    assert settings.request_timeout_s == 0.25
    assert settings.forward_hop_headers is True
    assert settings.metrics_port == 9100


@pytest.mark.parametrize("env", [
    {"PORT": "eighty"},
    {"PORT": "70000"},
    {"REQUEST_TIMEOUT_S": "0"},
    {"REQUEST_TIMEOUT_S": "soon"},
])
def test_invalid_values_raise_configuration_error(env):
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        load_settings(env)


def test_main_exits_non_zero_with_a_single_backend(monkeypatch):
    monkeypatch.setenv("BACKENDS", "http://only.test:8081")

    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 1


def test_main_exits_non_zero_with_a_malformed_backend(monkeypatch):
    monkeypatch.setenv("BACKENDS", "http://ok.test:8081,ftp://x")

    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 1


def test_main_exits_non_zero_when_the_port_is_taken(monkeypatch):
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen(1)
        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("PORT", str(taken.getsockname()[1]))
        monkeypatch.setenv("BACKENDS", "http://a.test:8081,http://b.test:8082")

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1


def test_main_exits_non_zero_when_the_metrics_port_is_taken(monkeypatch):
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as taken:
        taken.bind(("0.0.0.0", 0))
        taken.listen(1)
        monkeypatch.setenv("BACKENDS", "http://a.test:8081,http://b.test:8082")
        monkeypatch.setenv("METRICS_PORT", str(taken.getsockname()[1]))

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1


def test_main_returns_cleanly_after_sigterm(monkeypatch, backend_urls):
    port = free_port()
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", str(port))
    monkeypatch.setenv("BACKENDS", ",".join(backend_urls))

    def terminate_once_listening():
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            try:
                with socket.create_connection(("127.0.0.1", port), timeout=0.25):
                    break
            except OSError:
                time.sleep(0.05)
        os.kill(os.getpid(), signal.SIGTERM)

    killer = threading.Thread(target=terminate_once_listening, daemon=True)
    killer.start()

    # Returning without SystemExit is a zero exit status for the console script
    main()
    killer.join(timeout=5)
