"""Spouštěcí bod pro `python -m doklad`."""

from __future__ import annotations

from doklad.service.main import main

if __name__ == "__main__":
    raise SystemExit(main())
