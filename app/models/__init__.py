"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `app/main.py` (workers, migrations, one-off scripts).
"""

# Import side-effects: register ORM mappings.
from app.models import (  # noqa: F401
    background_job,
    dunning,
    subscription,
)
