import sys

from bulkmint.cli import main

if __name__ == "__main__":
    sys.exit(main())
