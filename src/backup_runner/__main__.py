"""backup-runner: backup_runner/__main__.py.

Entry point for ``python -m backup_runner`` and the ``backup-runner`` script.
"""

import sys

from .cli.dispatcher import main

if __name__ == "__main__":
    sys.exit(main())
