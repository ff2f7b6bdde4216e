from __future__ import annotations

import contextlib
import logging
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from .config import HotpatchConfig, expand_path
from .http_client import HttpClientError, http_get_json

logger = logging.getLogger("hotpatch.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str


class BrowserLauncher:
    def __init__(self, config: HotpatchConfig | None = None) -> None:
        self.config = config or HotpatchConfig.from_env()
        self.process: subprocess.Popen | None = None

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        endpoint = f"http://127.0.0.1:{self.config.cdp_port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.config.cdp_port)) != 0
            except OSError:
                return False

    def _build_flags(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={expand_path(self.config.profile_path)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        elif self.config.window_size:
            flags.append(f"--window-size={self.config.window_size}")
        if self.config.devtools:
            flags.append("--auto-open-devtools-for-tabs")
        return flags

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = self._build_flags() + self.config.extra_flags
        if extra:
            flags.extend(extra)
        # Start on a blank page; navigation happens once interception is in place.
        return [self.config.binary_path, *flags, "about:blank"]

    def ensure_running(self, timeout: float | None = None) -> LaunchResult:
        timeout = self.config.launch_timeout if timeout is None else timeout
        if self.cdp_ready():
            return LaunchResult([], False, "Browser already listening on CDP port")
        if not self._port_available():
            return LaunchResult([], False, f"Port {self.config.cdp_port} already in use")

        with contextlib.suppress(OSError):
            Path(expand_path(self.config.profile_path)).mkdir(parents=True, exist_ok=True)

        cmd = self.build_launch_command()
        logger.info("launching %s", " ".join(cmd))
        try:
            self.process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc))

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                return LaunchResult(cmd, True, "Browser launched")
            if self.process.poll() is not None:
                return LaunchResult(cmd, False, f"Browser exited with code {self.process.returncode}")
            time.sleep(0.1)
        return LaunchResult(cmd, False, "Browser launch timed out")

    def list_targets(self) -> list[dict]:
        try:
            payload = http_get_json(f"http://127.0.0.1:{self.config.cdp_port}/json/list", timeout=1.0)
        except HttpClientError:
            return []
        return payload if isinstance(payload, list) else []

    def page_ws_url(self) -> str:
        """WebSocket URL of the page to drive (opening a blank one if none exists)."""
        for target in self.list_targets():
            if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
                return str(target["webSocketDebuggerUrl"])
        created = http_get_json(
            f"http://127.0.0.1:{self.config.cdp_port}/json/new?about:blank", timeout=2.0, method="PUT"
        )
        ws_url = created.get("webSocketDebuggerUrl") if isinstance(created, dict) else None
        if not ws_url:
            raise HttpClientError("Browser did not return a page target")
        return str(ws_url)

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned browser process."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return True
        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError):
                proc.kill()
        return True
