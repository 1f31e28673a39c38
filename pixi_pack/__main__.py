import sys

from pixi_pack.cli import main

sys.exit(main())
