"""Allow ``python -m openindiana_up``."""

from openindiana_up.cli import main

raise SystemExit(main())
