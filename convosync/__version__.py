"""Version information for convosync."""

import os

__version__ = "0.4.0"
__version_info__ = tuple(int(i) for i in __version__.split(".") if i.isdigit())

# Stamped into the container image by the release pipeline
__build_date__ = os.getenv("CONVOSYNC_BUILD_DATE") or None
__commit_sha__ = os.getenv("CONVOSYNC_COMMIT_SHA") or None
