from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

DEFAULT_BASE_URL = "https://www.google.com"

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome-beta",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir in some setups.
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_window_size(raw: str) -> tuple[int | None, int | None]:
    parts = [p.strip() for p in (raw or "").replace("x", ",").split(",") if p.strip()]
    if len(parts) != 2:
        return None, None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None, None


@dataclass
class HotpatchConfig:
    root_dir: str = "."
    base_url: str = DEFAULT_BASE_URL
    binary_path: str = "google-chrome"
    profile_path: str = "~/.cache/hotpatch/browser-profile"
    cdp_port: int = 9222
    devtools: bool = False
    headless: bool = False
    window_width: int | None = None
    window_height: int | None = None
    extra_flags: list[str] = field(default_factory=list)
    command_timeout: float = 10.0
    launch_timeout: float = 10.0
    verbose: bool = False

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("HOTPATCH_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> HotpatchConfig:
        width, height = _parse_window_size(os.environ.get("HOTPATCH_WINDOW_SIZE", ""))
        flags_raw = os.environ.get("HOTPATCH_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        return cls(
            root_dir=expand_path(os.environ.get("HOTPATCH_ROOT", ".")),
            base_url=os.environ.get("HOTPATCH_URL") or DEFAULT_BASE_URL,
            binary_path=cls.detect_binary(),
            profile_path=expand_path(os.environ.get("HOTPATCH_PROFILE", "~/.cache/hotpatch/browser-profile")),
            cdp_port=int(os.environ.get("HOTPATCH_PORT", "9222")),
            devtools=_env_flag("HOTPATCH_DEVTOOLS"),
            headless=_env_flag("HOTPATCH_HEADLESS"),
            window_width=width,
            window_height=height,
            extra_flags=extra_flags,
            command_timeout=float(os.environ.get("HOTPATCH_CDP_TIMEOUT", "10")),
            launch_timeout=float(os.environ.get("HOTPATCH_LAUNCH_TIMEOUT", "10")),
            verbose=_env_flag("HOTPATCH_VERBOSE"),
        )

    def with_overrides(self, **overrides: Any) -> HotpatchConfig:
        """Return a copy with every non-None override applied (CLI > env)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "root_dir" in changes:
            changes["root_dir"] = expand_path(str(changes["root_dir"]))
        return replace(self, **changes)

    @property
    def window_size(self) -> str | None:
        if self.window_width and self.window_height:
            return f"{self.window_width},{self.window_height}"
        return None
