import sys

from rainbowpty.cli import main

sys.exit(main())
