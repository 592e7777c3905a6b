"""Entry point for `python -m relay_client` and the `posrelay` console script."""

from __future__ import annotations

from relay_client.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
