from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from pipekit.db_models import Base


def _sqlite_url(database_url: str) -> str:
    url = make_url(database_url)
    if not url.database or url.database == ":memory:":
        return database_url

    # History lives next to the user's other files, e.g. sqlite:///~/.pipekit/history.db
    path = Path(url.database).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return url.set(database=str(path)).render_as_string(hide_password=False)


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        database_url = _sqlite_url(database_url)
        # Scheduled runs execute on APScheduler worker threads.
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
