import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str:
    return (value or datetime.now(timezone.utc)).astimezone(timezone.utc).isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._fernet: Fernet | None = None
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS search_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    config_id TEXT NOT NULL,
                    hunt_type TEXT NOT NULL,
                    media_type TEXT NOT NULL,
                    media_id INTEGER NOT NULL,
                    season_number INTEGER NOT NULL DEFAULT -1,
                    title TEXT,
                    search_count INTEGER NOT NULL DEFAULT 1,
                    searched_at TEXT NOT NULL,
                    UNIQUE (config_id, hunt_type, media_type, media_id, season_number)
                );
                CREATE INDEX IF NOT EXISTS idx_search_history_lookup
                ON search_history(config_id, hunt_type, searched_at);
                CREATE TABLE IF NOT EXISTS hunt_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    config_id TEXT NOT NULL,
                    service TEXT NOT NULL,
                    instance_id INTEGER NOT NULL,
                    instance_name TEXT,
                    hunt_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    items_searched INTEGER NOT NULL DEFAULT 0,
                    items_grabbed INTEGER NOT NULL DEFAULT 0,
                    searched_items_json TEXT,
                    grabbed_items_json TEXT,
                    message TEXT,
                    api_calls_made INTEGER NOT NULL DEFAULT 0,
                    duration_ms INTEGER,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_hunt_log_lookup
                ON hunt_log(config_id, id DESC);
                CREATE TABLE IF NOT EXISTS hunt_schedule (
                    config_id TEXT PRIMARY KEY,
                    last_missing_hunt TEXT,
                    last_upgrade_hunt TEXT,
                    api_calls_this_hour INTEGER NOT NULL DEFAULT 0,
                    api_calls_reset_at TEXT
                );
                CREATE TABLE IF NOT EXISTS arr_credentials (
                    app_type TEXT NOT NULL,
                    instance_id INTEGER NOT NULL,
                    api_key_enc TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (app_type, instance_id)
                );
                """
            )

    # -- search history ---------------------------------------------------

    def get_recent_search_keys(self, config_id: str, hunt_type: str, since: datetime) -> set[str]:
        """Keys ("media_type:media_id:season_number") searched at or after `since`."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT media_type, media_id, season_number
                FROM search_history
                WHERE config_id = ? AND hunt_type = ? AND searched_at >= ?
                """,
                (str(config_id), str(hunt_type), _iso(since)),
            ).fetchall()
        return {f"{r['media_type']}:{int(r['media_id'])}:{int(r['season_number'])}" for r in rows}

    def record_search(
        self,
        config_id: str,
        hunt_type: str,
        media_type: str,
        media_id: int,
        season_number: int | None,
        title: str,
        searched_at: datetime | None = None,
    ) -> None:
        season = int(season_number) if season_number is not None else -1
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO search_history(
                    config_id, hunt_type, media_type, media_id, season_number, title, search_count, searched_at
                )
                VALUES(?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(config_id, hunt_type, media_type, media_id, season_number) DO UPDATE SET
                    title=excluded.title,
                    searched_at=excluded.searched_at,
                    search_count=search_history.search_count + 1
                """,
                (
                    str(config_id),
                    str(hunt_type),
                    str(media_type),
                    int(media_id),
                    season,
                    str(title or ""),
                    _iso(searched_at),
                ),
            )

    def get_search_history(self, config_id: str, hunt_type: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        query = """
            SELECT config_id, hunt_type, media_type, media_id, season_number, title, search_count, searched_at
            FROM search_history
            WHERE config_id = ?
        """
        params: list[Any] = [str(config_id)]
        if hunt_type:
            query += " AND hunt_type = ?"
            params.append(str(hunt_type))
        query += " ORDER BY searched_at DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "config_id": r["config_id"],
                "hunt_type": r["hunt_type"],
                "media_type": r["media_type"],
                "media_id": int(r["media_id"]),
                "season_number": None if int(r["season_number"]) < 0 else int(r["season_number"]),
                "title": r["title"],
                "search_count": int(r["search_count"]),
                "searched_at": r["searched_at"],
            }
            for r in rows
        ]

    def prune_search_history(self, retention_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=max(1, int(retention_days)))
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM search_history WHERE searched_at < ?",
                (cutoff.isoformat(),),
            )
            return cur.rowcount

    # -- hunt log ---------------------------------------------------------

    def record_hunt_log(
        self,
        config_id: str,
        service: str,
        instance_id: int,
        instance_name: str,
        hunt_type: str,
        result: dict[str, Any],
        started_at: str,
        completed_at: str,
        duration_ms: int,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO hunt_log(
                    config_id, service, instance_id, instance_name, hunt_type, status,
                    items_searched, items_grabbed, searched_items_json, grabbed_items_json,
                    message, api_calls_made, duration_ms, started_at, completed_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(config_id),
                    str(service),
                    int(instance_id),
                    str(instance_name or ""),
                    str(hunt_type),
                    str(result.get("status") or "error"),
                    int(result.get("items_searched") or 0),
                    int(result.get("items_grabbed") or 0),
                    json.dumps(result.get("searched_items") or []),
                    json.dumps(result.get("grabbed_items") or []) if result.get("grabbed_items") else None,
                    str(result.get("message") or ""),
                    int(result.get("api_calls_made") or 0),
                    int(duration_ms),
                    str(started_at),
                    str(completed_at),
                ),
            )
            return int(cur.lastrowid)

    def get_recent_hunt_logs(self, config_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        query = """
            SELECT id, config_id, service, instance_id, instance_name, hunt_type, status,
                   items_searched, items_grabbed, searched_items_json, grabbed_items_json,
                   message, api_calls_made, duration_ms, started_at, completed_at
            FROM hunt_log
        """
        params: list[Any] = []
        if config_id:
            query += " WHERE config_id = ?"
            params.append(str(config_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        out: list[dict[str, Any]] = []
        for row in rows:
            try:
                searched = json.loads(row["searched_items_json"] or "[]")
            except (TypeError, ValueError):
                searched = []
            try:
                grabbed = json.loads(row["grabbed_items_json"] or "[]")
            except (TypeError, ValueError):
                grabbed = []
            out.append(
                {
                    "id": int(row["id"]),
                    "config_id": row["config_id"],
                    "service": row["service"],
                    "instance_id": int(row["instance_id"]),
                    "instance_name": row["instance_name"],
                    "hunt_type": row["hunt_type"],
                    "status": row["status"],
                    "items_searched": int(row["items_searched"]),
                    "items_grabbed": int(row["items_grabbed"]),
                    "searched_items": searched,
                    "grabbed_items": grabbed,
                    "message": row["message"],
                    "api_calls_made": int(row["api_calls_made"]),
                    "duration_ms": row["duration_ms"],
                    "started_at": row["started_at"],
                    "completed_at": row["completed_at"],
                }
            )
        return out

    # -- schedule / hourly API cap ----------------------------------------

    def get_hunt_schedule(self, config_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT last_missing_hunt, last_upgrade_hunt, api_calls_this_hour, api_calls_reset_at
                FROM hunt_schedule WHERE config_id = ?
                """,
                (str(config_id),),
            ).fetchone()
        if not row:
            return {
                "last_missing_hunt": None,
                "last_upgrade_hunt": None,
                "api_calls_this_hour": 0,
                "api_calls_reset_at": None,
            }
        return {
            "last_missing_hunt": _parse_iso(row["last_missing_hunt"]),
            "last_upgrade_hunt": _parse_iso(row["last_upgrade_hunt"]),
            "api_calls_this_hour": int(row["api_calls_this_hour"] or 0),
            "api_calls_reset_at": _parse_iso(row["api_calls_reset_at"]),
        }

    def reset_api_calls(self, config_id: str, reset_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO hunt_schedule(config_id, api_calls_this_hour, api_calls_reset_at)
                VALUES(?, 0, ?)
                ON CONFLICT(config_id) DO UPDATE SET
                    api_calls_this_hour=0,
                    api_calls_reset_at=excluded.api_calls_reset_at
                """,
                (str(config_id), _iso(reset_at)),
            )

    def mark_hunt_ran(
        self,
        config_id: str,
        hunt_type: str,
        ran_at: datetime,
        api_calls: int,
        reset_at_if_unset: datetime,
    ) -> None:
        column = "last_missing_hunt" if hunt_type == "missing" else "last_upgrade_hunt"
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO hunt_schedule(config_id, {column}, api_calls_this_hour, api_calls_reset_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(config_id) DO UPDATE SET
                    {column}=excluded.{column},
                    api_calls_this_hour=hunt_schedule.api_calls_this_hour + excluded.api_calls_this_hour,
                    api_calls_reset_at=COALESCE(hunt_schedule.api_calls_reset_at, excluded.api_calls_reset_at)
                """,
                (str(config_id), _iso(ran_at), max(0, int(api_calls)), _iso(reset_at_if_unset)),
            )

    # -- credentials ------------------------------------------------------

    def _key_path(self) -> Path:
        return self.db_path.parent / "arrhunt.masterkey"

    def _get_fernet(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet
        key_path = self._key_path()
        if key_path.exists():
            key = key_path.read_text(encoding="utf-8").strip().encode("ascii", "ignore")
        else:
            key = Fernet.generate_key()
            key_path.write_text(key.decode("ascii"), encoding="utf-8")
            try:
                key_path.chmod(0o600)
            except OSError:
                pass
        self._fernet = Fernet(key)
        return self._fernet

    def set_arr_api_key(self, app_type: str, instance_id: int, api_key: str) -> None:
        token = self._get_fernet().encrypt(str(api_key).encode("utf-8")).decode("ascii")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO arr_credentials(app_type, instance_id, api_key_enc, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(app_type, instance_id) DO UPDATE SET api_key_enc=excluded.api_key_enc, updated_at=excluded.updated_at
                """,
                (str(app_type), int(instance_id), token, _utc_now()),
            )

    def get_arr_api_key(self, app_type: str, instance_id: int) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT api_key_enc FROM arr_credentials WHERE app_type = ? AND instance_id = ?",
                (str(app_type), int(instance_id)),
            ).fetchone()
        if not row:
            return None
        token = str(row["api_key_enc"] or "").strip()
        if not token:
            return None
        try:
            return self._get_fernet().decrypt(token.encode("ascii"), ttl=None).decode("utf-8", "ignore").strip() or None
        except (InvalidToken, ValueError):
            return None

    def clear_arr_api_key(self, app_type: str, instance_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM arr_credentials WHERE app_type = ? AND instance_id = ?",
                (str(app_type), int(instance_id)),
            )
