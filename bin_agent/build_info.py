from __future__ import annotations

from typing import Literal

# Overwritten during packaging so release artifacts bake in their version and flavor.
VERSION = "0.3.0"
BUILD_FLAVOR: Literal["prod", "dev", "test"] = "dev"
