#!/usr/bin/env python
import os
import subprocess
import sys


def main(argv: list[str]) -> int:
    os.environ.setdefault("CALSHARE_SECRET_KEY", "test")
    os.environ.setdefault("CALSHARE_DISABLE_CSRF", "1")
    os.environ.setdefault("CALSHARE_TZ", "UTC")
    cmd = [
        "uv",
        "run",
        "--extra",
        "test",
        "-m",
        "pytest",
        *argv,
    ]
    try:
        return subprocess.call(cmd)
    except FileNotFoundError:
        raise SystemExit(
            "uv is required to run tests. See README.md under 'Development'."
        )


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
