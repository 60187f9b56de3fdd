from __future__ import annotations

import os
import threading
from pathlib import Path

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from drill.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = os.environ.get("DRILL_DB_PATH") or DATA_DIR / "drill.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in databases created before they existed."""
    inspector = sa_inspect(engine)
    if inspector.has_table("sessions"):
        columns = {col["name"] for col in inspector.get_columns("sessions")}
        if "auto_complete_on_objectives" not in columns:
            with engine.begin() as conn:
                conn.execute(text(
                    "ALTER TABLE sessions ADD COLUMN auto_complete_on_objectives BOOLEAN DEFAULT 0"
                ))
    _seed_default_scenario(engine)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def _seed_default_scenario(engine) -> None:
    """Seed the default training scenario and its objectives if none exist."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM scenarios")).scalar()
        if count > 0:
            return
    from drill.objectives import DEFAULT_SCENARIO_TITLE, DEFAULT_OBJECTIVES
    with engine.begin() as conn:
        scenario_id = conn.execute(
            text("INSERT INTO scenarios (title, description) VALUES (:title, '')"),
            {"title": DEFAULT_SCENARIO_TITLE},
        ).lastrowid
        for objective_id, (name, weight) in DEFAULT_OBJECTIVES.items():
            conn.execute(text(
                "INSERT INTO scenario_objectives "
                "(scenario_id, objective_id, objective_name, description, success_criteria_json, weight) "
                "VALUES (:scenario_id, :objective_id, :name, '', '{}', :weight)"
            ), {"scenario_id": scenario_id, "objective_id": objective_id, "name": name, "weight": weight})
