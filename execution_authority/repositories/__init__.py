from execution_authority.repositories.executions import (
    InMemoryExecutionsRepository,
    PostgresExecutionsRepository,
    SqliteExecutionsRepository,
    create_executions_repository,
)

__all__ = [
    "InMemoryExecutionsRepository",
    "PostgresExecutionsRepository",
    "SqliteExecutionsRepository",
    "create_executions_repository",
]
