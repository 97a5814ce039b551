"""CLI entry point for python -m contipipe"""
from contipipe.cli.commands import app

if __name__ == "__main__":
    app()
