import sys

from vbox_compute.cli import main

if __name__ == "__main__":
    sys.exit(main())
