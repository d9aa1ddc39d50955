from __future__ import annotations

import sys

from .apps.ops_cli import main as _ops_main


def main(argv: list[str] | None = None) -> int:
    return _ops_main(argv)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
