"""Entry point for `python -m apps_monitor` and the `apps-monitor` console script."""

from __future__ import annotations

from apps_monitor.cli import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
