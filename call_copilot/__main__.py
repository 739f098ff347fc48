"""
Entry point for running call_copilot as a module.

Usage:
    python -m call_copilot
    python -m call_copilot --to "+821012345678" --intent "오늘 7시 두 명 예약"
"""

from .src.main import main

if __name__ == "__main__":
    main()
