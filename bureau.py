"""Bookmark Bureau: Entry Point.

Usage:
  python bureau.py user-create EMAIL
  python bureau.py user-list
  python bureau.py totp enable|disable EMAIL
  python bureau.py cli-token generate|revoke|list ...
  python bureau.py ratelimit-cleanup
  python bureau.py ratelimit-init-db
"""

import sys

from bookmark_bureau.cli import main

if __name__ == "__main__":
    sys.exit(main())
