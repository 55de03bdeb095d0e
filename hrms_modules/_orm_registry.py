"""
Module ORM Registry (``hrms_modules._orm_registry``).

Ensure kernel and module SQLAlchemy ORM models are imported so that
``Base.metadata`` contains their table definitions before tables are
created.  Scripts, entrypoints, and ``tests/conftest.py`` all go through
``hrms_kernel.db.engine.create_tables()``, which calls this first.
"""


def import_all_orm_models() -> None:
    """Import kernel models and every ``hrms_modules.*.orm`` module (idempotent)."""
    import hrms_kernel.models  # noqa: F401
    import hrms_kernel.services.sequence_service  # noqa: F401  # sequence_counters
    import hrms_modules.expense.orm  # noqa: F401
