"""Entry point for ``python -m amp_relay``."""

from .cli import app


def main() -> None:
    app(prog_name="amp-relay")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
