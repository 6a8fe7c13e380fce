#!/usr/bin/env python3
"""An agent that reports an error and exits with a nonzero code."""

import sys


def main():
    code = int(sys.argv[1]) if len(sys.argv) > 1 else 1
    print("Starting failing agent...", flush=True)
    print("ERROR: Simulated failure!", file=sys.stderr, flush=True)
    sys.exit(code)


if __name__ == "__main__":
    main()
