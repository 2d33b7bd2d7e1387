from sqlalchemy.orm import Session


class BaseRepository:
    """Repositories share the caller's session; the caller owns the transaction."""

    def __init__(self, db: Session):
        self.db = db

    @property
    def dialect_name(self) -> str:
        return self.db.get_bind().dialect.name

    def flush(self) -> None:
        self.db.flush()

    def commit(self) -> None:
        self.db.commit()
