"""Entry point for ``python -m kaiproof``."""

import sys

from kaiproof.cli import main

sys.exit(main())
