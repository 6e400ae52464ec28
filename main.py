#!/usr/bin/env python3
"""ctxloop - coding-agent runtime. Equivalent to the ``ctxloop`` console script."""

import sys

from ctxloop.main import cli


def main():
    try:
        cli()
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(0)


if __name__ == "__main__":
    main()
