import asyncio
import json
import socket
from pathlib import Path

import pytest

from pipewright.preview import (
    LogBuffer,
    PortUnavailableError,
    PreviewTimeoutError,
    detect_dev_command,
    detect_project_kind,
    detect_project_type,
    find_available_port,
    wait_for_server,
)
from pipewright.preview.launcher import is_port_available


def _package(project: Path, **payload: object) -> None:
    (project / "package.json").write_text(json.dumps(payload), encoding="utf-8")


def test_log_buffer_keeps_latest_lines() -> None:
    logs = LogBuffer(max_lines=3)
    for index in range(5):
        logs.append(f"line {index}\n")

    assert logs.size == 3
    assert [entry.line for entry in logs.get_all()] == ["line 2", "line 3", "line 4"]
    assert [entry.line for entry in logs.get_recent(2)] == ["line 3", "line 4"]
    assert logs.get_recent(0) == []


def test_log_buffer_ignores_non_strings() -> None:
    logs = LogBuffer()
    logs.append(None)
    logs.append(b"bytes")

    assert logs.size == 0


def test_log_buffer_flags_errors() -> None:
    logs = LogBuffer()
    logs.append("ready on :3000")
    logs.append("Warning: prop mismatch")
    logs.append("Unhandled rejection", "stdout")
    logs.append("deprecated api", "stderr")

    errors = [entry.line for entry in logs.get_errors()]

    assert errors == ["Warning: prop mismatch", "Unhandled rejection", "deprecated api"]


def test_log_buffer_context_summary() -> None:
    logs = LogBuffer()
    logs.append("compiled")
    logs.append("TypeError: x is undefined", "stderr")

    context = logs.to_context()

    assert context["total_lines"] == 2
    assert context["error_count"] == 1
    assert context["errors"] == ["TypeError: x is undefined"]
    assert context["recent_output"] == ["[stdout] compiled", "[stderr] TypeError: x is undefined"]

    logs.clear()
    assert logs.to_context()["total_lines"] == 0


def test_detect_nextjs_prefers_npm_script(tmp_path: Path) -> None:
    _package(tmp_path, scripts={"dev": "next dev"})
    (tmp_path / "next.config.js").write_text("module.exports = {}", encoding="utf-8")

    command = detect_dev_command(tmp_path)

    assert command.framework == "nextjs"
    assert (command.command, command.args, command.default_port) == ("npm", ["run", "dev"], 3000)


def test_detect_vite_without_scripts_uses_npx(tmp_path: Path) -> None:
    _package(tmp_path, name="app")
    (tmp_path / "vite.config.ts").write_text("export default {}", encoding="utf-8")

    command = detect_dev_command(tmp_path)

    assert (command.framework, command.command, command.args) == ("vite", "npx", ["vite"])
    assert command.default_port == 5173


def test_detect_other_project_shapes(tmp_path: Path) -> None:
    django = tmp_path / "django"
    django.mkdir()
    (django / "manage.py").write_text("", encoding="utf-8")
    assert detect_dev_command(django).default_port == 8000

    node = tmp_path / "node"
    node.mkdir()
    _package(node, scripts={"start": "node server.js"})
    assert detect_dev_command(node).args == ["start"]

    static = tmp_path / "static"
    static.mkdir()
    (static / "index.html").write_text("<html></html>", encoding="utf-8")
    assert detect_dev_command(static).args == ["serve", "."]

    empty = tmp_path / "empty"
    empty.mkdir()
    assert detect_dev_command(empty) is None


def test_malformed_package_json_has_no_dev_command(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{broken", encoding="utf-8")
    (tmp_path / "index.html").write_text("<html></html>", encoding="utf-8")

    assert detect_dev_command(tmp_path) is None


def test_detect_project_kind(tmp_path: Path) -> None:
    assert detect_project_kind(tmp_path) == "library"

    _package(tmp_path, dependencies={"express": "^4"})
    assert detect_project_kind(tmp_path) == "api"

    _package(tmp_path, bin={"tool": "cli.js"})
    assert detect_project_kind(tmp_path) == "cli"

    (tmp_path / "vite.config.js").write_text("", encoding="utf-8")
    assert detect_project_kind(tmp_path) == "frontend"


def test_detect_project_type_confidence(tmp_path: Path) -> None:
    empty = detect_project_type(tmp_path)
    assert (empty.suggestion, empty.confidence) == ("greenfield", "low")

    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    single = detect_project_type(tmp_path)
    assert (single.suggestion, single.confidence) == ("greenfield", "medium")

    (tmp_path / "src").mkdir()
    existing = detect_project_type(tmp_path)
    assert (existing.suggestion, existing.confidence) == ("brownfield", "high")
    assert existing.signals["src_dir"] is True


def test_find_available_port_skips_taken_port() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("", 0))
        taken.listen()
        port = taken.getsockname()[1]

        assert is_port_available(port) is False
        chosen = asyncio.run(find_available_port(port, 5))

    assert chosen != port
    assert port < chosen < port + 5


def test_find_available_port_with_no_attempts() -> None:
    with pytest.raises(PortUnavailableError, match="no ports probed from 3000") as excinfo:
        asyncio.run(find_available_port(3000, 0))

    assert "2999" not in str(excinfo.value)


def test_wait_for_server_times_out() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]

    with pytest.raises(PreviewTimeoutError, match="did not respond"):
        asyncio.run(wait_for_server(f"http://127.0.0.1:{port}", timeout=0.2, request_timeout=0.1))
