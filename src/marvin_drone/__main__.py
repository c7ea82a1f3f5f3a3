import sys

from marvin_drone.cli import main

sys.exit(main())
