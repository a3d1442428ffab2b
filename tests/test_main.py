"""Tests for the command-line entry point."""

from __future__ import annotations

import socket

import pytest

from tavern_launcher import __main__ as entry


@pytest.fixture
def held_port():
    """A port with a listener on it for the duration of the test."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        yield sock.getsockname()[1]


class TestClaimControlPort:
    def test_free_port_needs_no_reclaim(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = []
        monkeypatch.setattr(entry.ports, "reclaim", lambda port: calls.append(port) or True)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        assert entry.claim_control_port("127.0.0.1", port, retries=3, delay=0) is True
        assert calls == []

    def test_gives_up_after_retries(self, held_port: int, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = []

        def stubborn(port):
            calls.append(port)
            return False

        monkeypatch.setattr(entry.ports, "reclaim", stubborn)

        assert entry.claim_control_port("127.0.0.1", held_port, retries=3, delay=0) is False
        assert calls == [held_port] * 3

    def test_succeeds_once_holder_lets_go(self, monkeypatch: pytest.MonkeyPatch) -> None:
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", 0))
        holder.listen()
        port = holder.getsockname()[1]
        calls = []

        def release(target):
            calls.append(target)
            if len(calls) == 2:
                holder.close()
            return len(calls) == 2

        monkeypatch.setattr(entry.ports, "reclaim", release)
        try:
            assert entry.claim_control_port("127.0.0.1", port, retries=5, delay=0) is True
        finally:
            holder.close()
        assert len(calls) == 2


class TestMain:
    def test_exits_when_port_cannot_be_claimed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def no_server(*args, **kwargs):
            raise AssertionError("server must not start")

        monkeypatch.setattr(entry, "setup_logging", lambda: None)
        monkeypatch.setattr(entry, "claim_control_port", lambda *args: False)
        monkeypatch.setattr(entry.uvicorn, "run", no_server)

        with pytest.raises(SystemExit) as exc:
            entry.main()
        assert exc.value.code == 1

    def test_runs_app_factory_when_port_is_claimed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        runs = []
        monkeypatch.setattr(entry, "setup_logging", lambda: None)
        monkeypatch.setattr(entry, "claim_control_port", lambda *args: True)
        monkeypatch.setattr(entry.uvicorn, "run", lambda app, **kwargs: runs.append((app, kwargs)))

        entry.main()

        assert len(runs) == 1
        app, kwargs = runs[0]
        assert app == "tavern_launcher.main:create_app"
        assert kwargs["factory"] is True
        assert kwargs["port"] == entry.config.port
