from __future__ import annotations

from cartledger.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
