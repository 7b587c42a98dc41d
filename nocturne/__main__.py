import sys

from nocturne.cli import main

sys.exit(main())
