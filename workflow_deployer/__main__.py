import sys

from workflow_deployer.cli import main

sys.exit(main())
