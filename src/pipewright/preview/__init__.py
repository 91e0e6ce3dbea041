from pipewright.preview.detector import detect_dev_command, detect_project_kind, detect_project_type
from pipewright.preview.launcher import (
    PortUnavailableError,
    PreviewError,
    PreviewServer,
    PreviewTimeoutError,
    find_available_port,
    launch_preview,
    open_browser,
    wait_for_server,
)
from pipewright.preview.log_buffer import LogBuffer

__all__ = [
    "LogBuffer",
    "PortUnavailableError",
    "PreviewError",
    "PreviewServer",
    "PreviewTimeoutError",
    "detect_dev_command",
    "detect_project_kind",
    "detect_project_type",
    "find_available_port",
    "launch_preview",
    "open_browser",
    "wait_for_server",
]
