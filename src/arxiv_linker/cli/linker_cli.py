#!/usr/bin/env python3
"""CLI entry point for arxiv-link command.

Links MathSciNet records in a page snapshot to their arXiv preprints.
"""

import sys


def main() -> None:
    """Entry point for arxiv-link command."""
    from arxiv_linker.linker import main as linker_main

    sys.exit(linker_main())


if __name__ == "__main__":
    main()
