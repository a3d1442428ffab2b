"""Run the launcher service."""

from tavern_launcher.__main__ import main

if __name__ == "__main__":
    main()
