"""Tracked repository records."""

import sqlite3
from pathlib import Path

from dep_orchestrator.db.engine import parse_dt
from dep_orchestrator.db.models import Repository
from dep_orchestrator.ecosystems.registry import detect_ecosystems
from dep_orchestrator.integrations.git import is_git_repo


def add_repository(db: sqlite3.Connection, path: str, name: str | None = None) -> Repository:
    """Record a repository, refreshing its detected ecosystems if already known."""
    repo = Path(path).expanduser().resolve()
    if not repo.is_dir():
        raise ValueError(f"Not a directory: {repo}")

    ecosystems = ",".join(detect_ecosystems(repo))
    db.execute(
        """INSERT INTO repositories (path, name, ecosystems, has_git)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(path) DO UPDATE SET
               name = excluded.name,
               ecosystems = excluded.ecosystems,
               has_git = excluded.has_git,
               updated_at = datetime('now')""",
        (str(repo), name or repo.name, ecosystems, int(is_git_repo(repo))),
    )
    return get_repository(db, str(repo))


def get_repository(db: sqlite3.Connection, path: str) -> Repository | None:
    row = db.execute("SELECT * FROM repositories WHERE path = ?", (path,)).fetchone()
    if not row:
        return None
    return _row_to_repository(row)


def list_repositories(db: sqlite3.Connection) -> list[Repository]:
    """List repositories; ``exists`` is checked against the filesystem on each call."""
    rows = db.execute("SELECT * FROM repositories ORDER BY name, path").fetchall()
    return [_row_to_repository(r) for r in rows]


def remove_repository(db: sqlite3.Connection, path: str) -> bool:
    cur = db.execute("DELETE FROM repositories WHERE path = ?", (path,))
    if cur.rowcount == 0:
        resolved = str(Path(path).expanduser().resolve())
        cur = db.execute("DELETE FROM repositories WHERE path = ?", (resolved,))
    return cur.rowcount > 0


def cleanup_missing_repositories(db: sqlite3.Connection) -> list[str]:
    """Forget every repository whose directory is gone. Returns the removed paths."""
    missing = [r.path for r in list_repositories(db) if not r.exists]
    for path in missing:
        db.execute("DELETE FROM repositories WHERE path = ?", (path,))
    return missing


def _row_to_repository(row: sqlite3.Row) -> Repository:
    return Repository(
        path=row["path"],
        name=row["name"],
        ecosystems=[e for e in (row["ecosystems"] or "").split(",") if e],
        has_git=bool(row["has_git"]),
        exists=Path(row["path"]).is_dir(),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
