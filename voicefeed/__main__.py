import sys

from voicefeed.cli import main

sys.exit(main())
