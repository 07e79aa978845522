#!/usr/bin/env python
import os
import subprocess
import sys


def main(argv: list[str]) -> int:
    os.environ.setdefault("WG_ADMIN_PASSWORD", "admin")
    os.environ.setdefault("WG_INSECURE_COOKIES", "1")
    cmd = [
        "uv",
        "run",
        "--with",
        "pytest",
        "--with",
        "httpx",
        "-m",
        "pytest",
        *argv,
    ]
    try:
        return subprocess.call(cmd)
    except FileNotFoundError:
        raise SystemExit("uv is required to run tests.")


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
