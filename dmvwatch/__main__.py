import sys

from dmvwatch.main import main

sys.exit(main())
