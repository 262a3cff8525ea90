import sys

from tokenwatch.core.main import main

if __name__ == '__main__':
    sys.exit(main())
