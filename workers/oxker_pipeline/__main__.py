import sys

from oxker_pipeline.cli import main

sys.exit(main())
