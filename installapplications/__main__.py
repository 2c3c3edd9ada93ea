"""Allow ``python -m installapplications``."""

from installapplications.cli import main

if __name__ == "__main__":
    main()
