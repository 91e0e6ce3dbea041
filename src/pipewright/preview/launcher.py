from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import urllib.error
import urllib.request
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pipewright.preview.log_buffer import LogBuffer
from pipewright.terminal.spawner import DEFAULT_KILL_GRACE_SECONDS, terminate_process

logger = logging.getLogger(__name__)

INITIAL_POLL_DELAY = 0.5
MAX_POLL_DELAY = 3.0
POLL_BACKOFF = 1.5


class PreviewError(RuntimeError):
    """Raised when a preview server cannot be started."""


class PortUnavailableError(PreviewError):
    pass


class PreviewTimeoutError(PreviewError, TimeoutError):
    pass


@dataclass(slots=True)
class PreviewServer:
    url: str
    port: int
    pid: int | None
    framework: str
    logs: LogBuffer
    process: Any = None
    _readers: list[asyncio.Task[None]] = field(default_factory=list, repr=False)

    async def kill(self, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> int | None:
        """Stop the server this preview started; other processes are never touched."""
        exit_code = None
        if self.process is not None and self.process.returncode is None:
            exit_code = await terminate_process(self.process, grace_seconds)
            logger.info("Stopped preview server %s (pid %s)", self.url, self.pid)
        elif self.process is not None:
            exit_code = self.process.returncode
        for reader in self._readers:
            reader.cancel()
        return exit_code


def is_port_available(port: int, host: str = "") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


async def find_available_port(start_port: int = 3000, max_attempts: int = 20) -> int:
    if max_attempts <= 0:
        raise PortUnavailableError(
            f"No available port: no ports probed from {start_port} (max_attempts={max_attempts})"
        )
    for port in range(start_port, start_port + max_attempts):
        if is_port_available(port):
            return port
    raise PortUnavailableError(
        f"No available port found in range {start_port}-{start_port + max_attempts - 1}"
    )


def _probe(url: str, request_timeout: float) -> bool:
    try:
        with urllib.request.urlopen(url, timeout=request_timeout):
            return True
    except urllib.error.HTTPError:
        # Any HTTP status, even 404 or 500, means something is listening.
        return True
    except (urllib.error.URLError, OSError):
        return False


async def wait_for_server(url: str, timeout: float = 30.0, *, request_timeout: float = 2.0) -> None:
    started = time.monotonic()
    delay = INITIAL_POLL_DELAY
    while True:
        if time.monotonic() - started > timeout:
            raise PreviewTimeoutError(f"Server at {url} did not respond within {timeout:g}s")
        if await asyncio.to_thread(_probe, url, request_timeout):
            logger.debug("Server at %s is up", url)
            return
        delay = min(delay * POLL_BACKOFF, MAX_POLL_DELAY)
        await asyncio.sleep(delay)


def open_browser(url: str) -> bool:
    opened = webbrowser.open(url)
    if not opened:
        logger.info("No browser available; preview is at %s", url)
    return opened


async def _pump(stream: asyncio.StreamReader | None, logs: LogBuffer, name: str) -> None:
    if stream is None:
        return
    async for raw_line in stream:
        line = raw_line.decode("utf-8", errors="replace")
        if line.strip():
            logs.append(line, name)


async def launch_preview(
    project_dir: Path,
    command: str,
    args: list[str],
    port: int,
    *,
    framework: str = "unknown",
    open_in_browser: bool = True,
    timeout: float = 30.0,
) -> PreviewServer:
    logs = LogBuffer()
    url = f"http://localhost:{port}"
    env = {**os.environ, "PORT": str(port)}
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(project_dir),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise PreviewError(f"Failed to start dev server: {exc}") from exc

    server = PreviewServer(
        url=url,
        port=port,
        pid=process.pid,
        framework=framework,
        logs=logs,
        process=process,
        _readers=[
            asyncio.create_task(_pump(process.stdout, logs, "stdout")),
            asyncio.create_task(_pump(process.stderr, logs, "stderr")),
        ],
    )
    logger.info(
        "Started %s preview: %s %s (pid %s)", framework, command, " ".join(args), process.pid
    )

    try:
        await wait_for_server(url, timeout)
    except PreviewTimeoutError:
        await server.kill()
        raise

    if open_in_browser:
        open_browser(url)
    return server
