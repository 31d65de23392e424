"""Allow ``python -m natkeeper``."""

from natkeeper.cli.main import main

if __name__ == "__main__":
    main()
