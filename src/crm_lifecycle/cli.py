"""Console entrypoint shim.

The CLI itself lives in `crm_lifecycle.statemachine.main`.
"""

from __future__ import annotations

from crm_lifecycle.statemachine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
