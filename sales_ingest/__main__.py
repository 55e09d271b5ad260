"""Allow ``python -m sales_ingest``."""

import sys

from sales_ingest.main import main

sys.exit(main())
