from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from matteflow.db.models import Base


class Database:
    """Engine plus a unit-of-work helper shared by every store."""

    def __init__(self, db_url: str, *, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False, "timeout": 30} if db_url.startswith("sqlite") else {}
        self._engine = create_engine(db_url, future=True, echo=echo, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @property
    def engine(self):
        return self._engine

    def init(self) -> None:
        self._ensure_sqlite_dir()
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    def _ensure_sqlite_dir(self) -> None:
        url = str(self._engine.url)
        if not url.startswith("sqlite:///") or url == "sqlite:///:memory:":
            return
        db_path = url.replace("sqlite:///", "", 1)
        path_obj = Path(db_path)
        if path_obj.parent:
            path_obj.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def scope(self, session: Session | None = None) -> Iterator[Session]:
        """Join the caller's transaction when one is given, otherwise open a new one."""
        if session is not None:
            yield session
            return
        with self.session() as own:
            yield own
