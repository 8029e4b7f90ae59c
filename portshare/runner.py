"""Running external commands and collecting their combined output."""

from __future__ import annotations

import os
import subprocess
from typing import Any, Protocol


class CommandError(Exception):
    """An external command could not be started, timed out or exited unsuccessfully."""

    def __init__(self, message: str, output: bytes = b"", returncode: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class Runner(Protocol):
    """Anything that runs a command and returns its combined stdout and stderr."""

    def run(self, name: str, *args: str) -> bytes:
        ...


def _hidden_window_options() -> dict[str, Any]:
    """Keep console windows from flashing up when running on Windows."""
    if os.name != "nt":
        return {}
    startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
    startupinfo.wShowWindow = subprocess.SW_HIDE  # type: ignore[attr-defined]
    return {
        "creationflags": subprocess.CREATE_NO_WINDOW,  # type: ignore[attr-defined]
        "startupinfo": startupinfo,
    }


class ExecRunner:
    """Runs commands as child processes, merging stderr into stdout."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, name: str, *args: str) -> bytes:
        try:
            completed = subprocess.run(
                [name, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
                **_hidden_window_options(),
            )
        except FileNotFoundError as exc:
            raise CommandError(f'exec: "{name}": executable file not found') from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"{name}: timed out after {self.timeout}s", output=exc.output or b""
            ) from exc
        except OSError as exc:
            raise CommandError(f"{name}: {exc}") from exc
        if completed.returncode != 0:
            raise CommandError(
                f"exit status {completed.returncode}",
                output=completed.stdout,
                returncode=completed.returncode,
            )
        return completed.stdout