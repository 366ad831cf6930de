"""Allow running as ``python -m webpulse``."""

from . import main

main()
