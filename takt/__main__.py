"""Entry point for python -m takt."""

from .cli import main

if __name__ == "__main__":
    main()
