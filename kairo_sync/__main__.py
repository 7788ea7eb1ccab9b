import sys

from kairo_sync.cli import main

sys.exit(main())
