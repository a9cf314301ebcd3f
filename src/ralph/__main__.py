from __future__ import annotations

from ralph.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
