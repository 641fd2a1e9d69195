import sys

from eventscore.cli import main

sys.exit(main())
