"""Entry point for ``python -m aadflow``."""

from aadflow.cli.main import main

if __name__ == "__main__":
    main()
