#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[hotpatch] binary={os.environ.get('HOTPATCH_BROWSER_BINARY', 'auto')} | "
    f"profile={os.environ.get('HOTPATCH_PROFILE', '~/.cache/hotpatch/browser-profile')} | "
    f"port={os.environ.get('HOTPATCH_PORT', '9222')} | "
    f"url={os.environ.get('HOTPATCH_URL', 'default')}",
    file=sys.stderr,
)

from dev_servers.hotpatch.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
