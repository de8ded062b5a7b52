"""Entry point for detached one-shot worker processes.

Started by ``schedule_once`` as ``python -m cadence.jobs.worker <record>``.
"""

import sys

from cadence.jobs.detached import main

if __name__ == "__main__":
    sys.exit(main())
