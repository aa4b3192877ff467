"""Module entrypoint for `python -m acpthread`."""

from __future__ import annotations

from acpthread.cli import entrypoint

if __name__ == "__main__":
    entrypoint()
