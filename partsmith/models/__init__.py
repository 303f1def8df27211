"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `partsmith/main.py` (CLI, scheduler, migrations).
"""

# Import side-effects: register ORM mappings.
from partsmith.models import partition_config  # noqa: F401
