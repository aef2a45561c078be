"""Entry point that launches the queue web service."""

from __future__ import annotations

import signal
import sys

from bibletts.webui.app import main as _run_web_ui


def _graceful_exit(signum, _frame):
    # atexit handlers registered by the app factory run on sys.exit.
    sys.exit(0)


signal.signal(signal.SIGTERM, _graceful_exit)


def main() -> None:
    """Launch the Flask-based queue service."""

    _run_web_ui()


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    main()
