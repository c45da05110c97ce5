"""Allow ``python -m impact_pool``."""

import sys

from impact_pool.cli import main

sys.exit(main())
