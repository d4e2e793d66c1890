"""Entry point for the Atoll CLI.

The supervisor spawns the dev server as ``python -m atoll serve``.
"""

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
