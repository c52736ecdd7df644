"""Entry point for python -m reelforge"""
from reelforge.cli.commands import app

if __name__ == "__main__":
    app()
