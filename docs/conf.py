"""Sphinx configuration for the SafeTrack API documentation."""

import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.abspath(".."))

project = "SafeTrack API"
current_year = datetime.now().year
copyright = f"{current_year}, SafeTrack"
author = "SafeTrack Team"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
]

autodoc_member_order = "bysource"

templates_path = ["_templates"]
exclude_patterns: list[str] = ["_build"]

html_theme = "alabaster"
