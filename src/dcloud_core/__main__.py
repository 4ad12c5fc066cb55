"""Allow ``python -m dcloud_core``."""

import sys

from dcloud_core.cli import main

sys.exit(main())
