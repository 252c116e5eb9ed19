"""
Entry point for the chat client.
Starts the interactive terminal client (``run``) or the server (``serve``).
"""
from .cli import app


def main():
    """Launch the chat command line application."""
    app()


if __name__ == "__main__":
    main()
