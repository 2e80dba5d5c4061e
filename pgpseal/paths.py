"""
paths.py
========
Single source of truth for filesystem locations.

The optional JSON configuration file lives at the project root unless the
PGPSEAL_CONFIG environment variable points elsewhere (resolved at load time
by config.load_settings).
"""

import os

# The directory that contains THIS file (pgpseal/)
_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

# The project root is one level above the package
PROJECT_ROOT = os.path.dirname(_PACKAGE_DIR)

CONFIG_PATH     = os.path.join(PROJECT_ROOT, "config.json")
CONFIG_PATH_ENV = "PGPSEAL_CONFIG"
