"""Entry point for ``python -m jobcapture``."""
from .cli import cli

if __name__ == "__main__":
    cli()
