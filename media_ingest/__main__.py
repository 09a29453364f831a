"""Allow ``python -m media_ingest``."""

from .cli import main

main()
