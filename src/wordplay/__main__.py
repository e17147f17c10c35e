"""Main entry point: python -m wordplay."""
from wordplay.cli import app


def main() -> None:
    """Run the command-line interface."""
    app(prog_name="wordplay")


if __name__ == "__main__":
    main()
