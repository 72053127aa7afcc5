import sys

from vm_script_runner.cli import main

sys.exit(main())
