#!/usr/bin/env python3
"""An agent that prints its arguments and exits."""

import sys


def main():
    print(" ".join(sys.argv[1:]) or "hello")
    sys.exit(0)


if __name__ == "__main__":
    main()
