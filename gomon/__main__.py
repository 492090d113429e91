import sys

from gomon.main import main

sys.exit(main())
