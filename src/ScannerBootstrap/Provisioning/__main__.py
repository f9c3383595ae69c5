"""Allow ``python -m ScannerBootstrap.Provisioning``."""

from .cli import app

if __name__ == "__main__":
    app()
