import sys

from ragrelay.cli import main

sys.exit(main())
