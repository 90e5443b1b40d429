"""Module entrypoint for `python -m agentsquad`."""

from agentsquad.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
