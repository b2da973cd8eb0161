# evidence_runner/__main__.py
import sys

from evidence_runner.cli import main

if __name__ == "__main__":
    sys.exit(main())
