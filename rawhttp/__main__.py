import sys

from .cli import fileserver_main

sys.exit(fileserver_main())
