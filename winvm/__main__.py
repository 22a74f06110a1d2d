"""Allow ``python -m winvm``."""

from winvm.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
