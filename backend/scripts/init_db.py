from __future__ import annotations

from sqlalchemy import inspect

from budget_tracker.config import settings
from budget_tracker.persistence import SqlPersistence
from budget_tracker.tables import metadata


def main() -> None:
    persistence = SqlPersistence(settings.database_url)

    existing = set(inspect(persistence.engine).get_table_names())
    persistence.create_schema()
    for name in metadata.tables:
        if name not in existing:
            print(f"Created: {name}")

    print("Schema initialisation finished.")


if __name__ == "__main__":
    main()
