import sys

from policy_sandbox.cli import main

sys.exit(main())
