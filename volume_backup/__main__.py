import sys

from volume_backup.main import main

sys.exit(main())
