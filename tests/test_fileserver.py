import json
import logging
import os
from datetime import datetime, timedelta, timezone

import pytest

import fileserver
from fileserver import (
    AgeBoundRotatingFileHandler,
    ServerConfig,
    load_server_config,
    resolve_log_path,
    resolve_served_file,
    setup_logging,
)
from header_decorator import ConfigError


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger(fileserver.LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


# --- Server config ---


@pytest.mark.parametrize(
    "port, expected",
    [
        (":8080", (None, 8080)),
        ("127.0.0.1:9000", ("127.0.0.1", 9000)),
        ("[::1]:8443", ("::1", 8443)),
        ("", (None, 80)),
        ("localhost:", ("localhost", 0)),
        (":", (None, 0)),
    ],
)
def test_listen_address(port, expected):
    assert ServerConfig(port).listen_address() == expected


@pytest.mark.parametrize("port", ["8080", ":http", ":99999", ":-1"])
def test_listen_address_invalid(port):
    with pytest.raises(ConfigError):
        ServerConfig(port).listen_address()


def test_load_server_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"Port": ":8080", "Extra": True}))
    assert load_server_config(path).port == ":8080"


def test_load_server_config_key_case(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"port": ":81"}')
    assert load_server_config(path).port == ":81"


def test_load_server_config_missing_is_fatal(tmp_path):
    with pytest.raises(ConfigError):
        load_server_config(tmp_path / "config.json")


@pytest.mark.parametrize("content", ["{", "[]", '{"Port": 8080}', ""])
def test_load_server_config_malformed_is_fatal(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_server_config(path)


# --- Logging ---


def test_resolve_log_path_uses_data_dir(tmp_path):
    path = resolve_log_path(environ={"DataDir": str(tmp_path)})
    assert path == os.path.join(str(tmp_path), "logs", "local", "FileServer", "FileServer.log")


def test_resolve_log_path_falls_back_to_script_dir(tmp_path):
    script = tmp_path / "bin" / "fileserver.py"
    path = resolve_log_path(environ={}, script_path=str(script))
    assert path == os.path.join(str(tmp_path / "bin"), "logs", "local", "FileServer", "FileServer.log")


def test_setup_logging_writes_to_file(tmp_path):
    log_path = tmp_path / "logs" / "FileServer.log"
    logger = setup_logging(str(log_path), console=False)
    logger.info("started")
    for handler in logger.handlers:
        handler.flush()
    assert "started" in log_path.read_text()


def test_setup_logging_unusable_path_is_fatal(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with pytest.raises(ConfigError):
        setup_logging(str(blocker / "FileServer.log"), console=False)


def _record(message):
    return logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)


def test_rotation_creates_timestamped_backup(tmp_path):
    log_path = tmp_path / "FileServer.log"
    handler = AgeBoundRotatingFileHandler(str(log_path), max_bytes=64)
    try:
        for i in range(10):
            handler.emit(_record(f"line {i} " + "x" * 20))
    finally:
        handler.close()

    backups = [name for name in os.listdir(tmp_path) if name.startswith("FileServer-")]
    assert backups
    assert all(name.endswith(".log") for name in backups)
    assert log_path.stat().st_size <= 64


def test_rotation_removes_expired_backups(tmp_path):
    log_path = tmp_path / "FileServer.log"
    handler = AgeBoundRotatingFileHandler(str(log_path), max_bytes=1024, max_age_days=10)
    now = datetime.now(timezone.utc)
    expired = handler.backup_filename(now - timedelta(days=11))
    recent = handler.backup_filename(now - timedelta(days=2))
    unrelated = tmp_path / "FileServer-notes.log"
    for path in (expired, recent, unrelated):
        with open(path, "w") as f:
            f.write("old")

    try:
        handler.doRollover()
    finally:
        handler.close()

    assert not os.path.exists(expired)
    assert os.path.exists(recent)
    assert unrelated.exists()


# --- Startup ---


def _write_startup_files(directory, header_config=None):
    (directory / "config.json").write_text('{"Port": ":8089"}')
    (directory / "files").mkdir()
    if header_config is not None:
        (directory / "headerConfig.json").write_text(header_config)


def _argv(directory):
    return [
        "--config", str(directory / "config.json"),
        "--header-config", str(directory / "headerConfig.json"),
        "--dir", str(directory / "files"),
        "--log-file", str(directory / "logs" / "FileServer.log"),
        "--quiet",
    ]


def test_main_missing_config_exits(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(fileserver.web, "run_app", lambda *args, **kwargs: calls.append(args))

    with pytest.raises(SystemExit) as exc_info:
        fileserver.main(_argv(tmp_path))

    assert exc_info.value.code == 1
    assert calls == []
    assert "Failed to load the config file" in (tmp_path / "logs" / "FileServer.log").read_text()


def test_main_malformed_header_config_exits(tmp_path, monkeypatch):
    _write_startup_files(tmp_path, header_config="[{")
    calls = []
    monkeypatch.setattr(fileserver.web, "run_app", lambda *args, **kwargs: calls.append(args))

    with pytest.raises(SystemExit) as exc_info:
        fileserver.main(_argv(tmp_path))

    assert exc_info.value.code == 1
    assert calls == []


def test_main_starts_without_header_config(tmp_path, monkeypatch):
    _write_startup_files(tmp_path)
    calls = []
    monkeypatch.setattr(fileserver.web, "run_app", lambda app, **kwargs: calls.append((app, kwargs)))

    fileserver.main(_argv(tmp_path))

    assert len(calls) == 1
    app, kwargs = calls[0]
    assert kwargs["host"] is None
    assert kwargs["port"] == 8089
    assert kwargs["keepalive_timeout"] == fileserver.READ_TIMEOUT
    log_text = (tmp_path / "logs" / "FileServer.log").read_text()
    assert "Server Config: ServerConfig(port=':8089')" in log_text
    assert "not found" in log_text


# --- Served file resolution ---


@pytest.fixture
def served_root(tmp_path):
    root = tmp_path / "files"
    (root / "docs").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "docs" / "index.html").write_text("<h1>docs</h1>")
    (root / "app.js").write_text("")
    (tmp_path / "secret.txt").write_text("")
    return root


def test_resolve_served_file_regular_file(served_root):
    assert resolve_served_file(str(served_root), "/app.js") == (served_root / "app.js").resolve()


def test_resolve_served_file_directory_index(served_root):
    expected = (served_root / "docs" / "index.html").resolve()
    assert resolve_served_file(str(served_root), "/docs/") == expected
    # Without the trailing slash the request is redirected, not served
    assert resolve_served_file(str(served_root), "/docs") is None


@pytest.mark.parametrize("request_path", ["/missing.js", "/empty/", "/../secret.txt", "/app.js\x00"])
def test_resolve_served_file_nothing_to_serve(served_root, request_path):
    assert resolve_served_file(str(served_root), request_path) is None
