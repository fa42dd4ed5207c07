"""CLI entry point for the transcode-queue package."""

import sys


def main():
    """Entry point for the transcode-queue command."""
    from transcode_queue.core.main import main as run
    sys.exit(run())


if __name__ == "__main__":
    main()
