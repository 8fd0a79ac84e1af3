"""
DMV Watch - Entry Point

Scheduled SQL Server DMV diagnostics with run-to-run regression reports
"""

import os
import sys
from typing import Optional, Sequence


def setup_environment() -> None:
    """Setup environment before any output is written"""
    # Windows: Enable ANSI colors in console
    if sys.platform == 'win32':
        os.system('')  # Enable VT100 escape sequences


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main application entry point"""
    setup_environment()

    from dmvwatch.cli import main as cli_main

    return cli_main(argv)


if __name__ == "__main__":
    sys.exit(main())
