import sys

from roboharness.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
