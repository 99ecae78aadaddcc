"""
vaultmirror -- Bitwarden vault mirroring.

Exports every secret from a source vault, seals the export in an
encrypted archive, then wipes the destination vault and reloads it
from the freshest archive. Designed to run unattended from cron.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

VAULTMIRROR_HOME = os.environ.get("VAULTMIRROR_HOME", "~/.vaultmirror")
