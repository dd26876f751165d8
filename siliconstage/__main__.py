import sys

from siliconstage.cli import main

sys.exit(main())
