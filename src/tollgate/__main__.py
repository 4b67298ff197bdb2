"""Module entrypoint for `python -m tollgate`."""

from __future__ import annotations

from tollgate.client import run


if __name__ == "__main__":
    run()
