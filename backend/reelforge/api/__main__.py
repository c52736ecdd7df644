"""python -m reelforge.api: same server as `reelforge serve`, bound from config."""
from reelforge.cli.commands import serve

if __name__ == "__main__":
    serve(host=None, port=None)
