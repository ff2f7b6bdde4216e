"""
Live-patching development server.

Serves a directory to a controlled Chrome page and pushes CSS, JavaScript
and HTML edits into the running page over the Chrome DevTools Protocol.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import HotpatchConfig
from .http_client import HttpClientError
from .server import HotpatchServer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("hotpatch")

__all__ = ["build_parser", "config_from_args", "main"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hotpatch-serve",
        description="Serve a page and watch for changes in html, js and css files",
    )
    parser.add_argument("dir", nargs="?", default=None, help="Directory to serve (default: HOTPATCH_ROOT or .)")
    parser.add_argument("--url", default=None, help="Base url of the page")
    parser.add_argument("-d", "--devtools", action="store_true", default=None, help="Run with devtools initially open")
    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="Run with verbose logging")
    parser.add_argument("-w", "--width", type=int, default=None, help="Width of the browser window")
    parser.add_argument("-H", "--height", type=int, default=None, help="Height of the browser window")
    parser.add_argument("--port", type=int, default=None, help="Remote debugging port")
    parser.add_argument("--headless", action="store_true", default=None, help="Run the browser headless")
    return parser


def config_from_args(args: argparse.Namespace) -> HotpatchConfig:
    return HotpatchConfig.from_env().with_overrides(
        root_dir=args.dir,
        base_url=args.url,
        devtools=args.devtools,
        verbose=args.verbose,
        window_width=args.width,
        window_height=args.height,
        cdp_port=args.port,
        headless=args.headless,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the hotpatch-serve command."""
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        # websockets logs every frame at DEBUG.
        logging.getLogger("websockets").setLevel(logging.INFO)

    server = HotpatchServer(config)
    try:
        return asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 0
    except HttpClientError as exc:
        logger.error("hotpatch failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
