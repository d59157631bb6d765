"""Allow ``python -m smbspk``."""

import sys

from . import main

sys.exit(main())
