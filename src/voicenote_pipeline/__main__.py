import sys

from voicenote_pipeline.main import main

sys.exit(main())
