"""vibex CLI bootstrap."""

from vibex.cli import app

if __name__ == "__main__":
    app()
