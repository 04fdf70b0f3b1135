"""Allow running the package as a module: python -m l1beat."""

import asyncio
import sys

from l1beat.main import main

if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
