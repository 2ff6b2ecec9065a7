"""python -m kiln.wrappers <variant> [args...]"""

import sys

from kiln.wrappers import main

if len(sys.argv) < 2:
    print("usage: python -m kiln.wrappers <variant> [args...]", file=sys.stderr)
    sys.exit(2)
sys.exit(main(sys.argv[1], sys.argv[2:]))
