"""Rebase Policy Console — Textual TUI entry point.

Launch: python3 -m tui.app [--status-dir PATH]

Reads policy status from filesystem only. Does NOT import rebase_policy or
any engine module.
"""

import argparse

from textual.app import App

from tui.screens.cockpit import CockpitScreen

DEFAULT_STATUS_DIR = "./rebase_state"


class RebaseConsole(App):
    """Rebase Policy Console."""

    TITLE = "Rebase Policy Console"

    def __init__(self, status_dir: str = "") -> None:
        super().__init__()
        self.status_dir = status_dir or DEFAULT_STATUS_DIR

    def on_mount(self) -> None:
        self.push_screen(CockpitScreen(status_dir=self.status_dir))


def main():
    parser = argparse.ArgumentParser(description="Rebase Policy Console")
    parser.add_argument(
        "--status-dir",
        default=DEFAULT_STATUS_DIR,
        help="State directory written by rebase_cli",
    )
    args = parser.parse_args()

    app = RebaseConsole(status_dir=args.status_dir)
    app.run()


if __name__ == "__main__":
    main()
