from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .models import ConfigRecord, ConfigScope, ConfigStatus, ConfigType, ScopeType

SCHEMA = """
CREATE TABLE IF NOT EXISTS config_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    scope_type TEXT NOT NULL,
    product_code TEXT NOT NULL,
    partner_code TEXT,
    branch_code TEXT,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    version INTEGER NOT NULL DEFAULT 1,
    payload TEXT NOT NULL,
    created_by TEXT NOT NULL DEFAULT 'system',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL,
    config_type TEXT NOT NULL,
    action TEXT NOT NULL,
    user_name TEXT NOT NULL DEFAULT 'system',
    changes TEXT NOT NULL DEFAULT '{}',
    change_reason TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (config_id) REFERENCES config_records(id)
);
"""

RECORD_COLUMNS = (
    "id, config_type, entity_id, scope_type, product_code, partner_code, branch_code, "
    "status, version, payload, created_by, created_at, updated_at"
)


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_config_records_schema(conn)
    conn.close()


def migrate_config_records_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(config_records)").fetchall()}
    if "created_by" not in columns:
        conn.execute("ALTER TABLE config_records ADD COLUMN created_by TEXT NOT NULL DEFAULT 'system'")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_config_records_lookup
        ON config_records(config_type, entity_id, product_code, status)
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_config_records_versioning
        ON config_records(config_type, entity_id, scope_type, product_code,
                          IFNULL(partner_code, ''), IFNULL(branch_code, ''), version)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_config ON audit_log(config_id, id)")


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def row_to_record(row: sqlite3.Row) -> ConfigRecord:
    return ConfigRecord(
        id=int(row["id"]),
        entity_id=row["entity_id"],
        scope=ConfigScope(
            type=ScopeType(row["scope_type"]),
            product_code=row["product_code"],
            partner_code=row["partner_code"],
            branch_code=row["branch_code"],
        ),
        status=ConfigStatus(row["status"]),
        version=int(row["version"]),
        payload=json.loads(row["payload"]),
        updated_at=row["updated_at"] or "",
        config_type=ConfigType(row["config_type"]),
    )


def fetch_record(conn: sqlite3.Connection, record_id: int) -> ConfigRecord | None:
    row = conn.execute(f"SELECT {RECORD_COLUMNS} FROM config_records WHERE id = ?", (record_id,)).fetchone()
    return row_to_record(row) if row is not None else None


def fetch_candidates(
    conn: sqlite3.Connection,
    config_type: ConfigType,
    entity_id: str,
    product_code: str,
) -> list[ConfigRecord]:
    rows = conn.execute(
        f"""
        SELECT {RECORD_COLUMNS} FROM config_records
        WHERE config_type = ? AND entity_id = ? AND product_code = ? AND status = 'ACTIVE'
        ORDER BY id
        """,
        (config_type.value, entity_id, product_code),
    ).fetchall()
    return [row_to_record(row) for row in rows]


def fetch_entity_records(conn: sqlite3.Connection, config_type: ConfigType, entity_id: str) -> list[ConfigRecord]:
    rows = conn.execute(
        f"SELECT {RECORD_COLUMNS} FROM config_records WHERE config_type = ? AND entity_id = ? ORDER BY id",
        (config_type.value, entity_id),
    ).fetchall()
    return [row_to_record(row) for row in rows]


def next_version(conn: sqlite3.Connection, config_type: ConfigType, entity_id: str, scope: ConfigScope) -> int:
    row = conn.execute(
        """
        SELECT MAX(version) AS version FROM config_records
        WHERE config_type = ? AND entity_id = ? AND scope_type = ? AND product_code = ?
          AND IFNULL(partner_code, '') = ? AND IFNULL(branch_code, '') = ?
        """,
        (
            config_type.value,
            entity_id,
            scope.type.value,
            scope.product_code,
            scope.partner_code or "",
            scope.branch_code or "",
        ),
    ).fetchone()
    return int(row["version"] or 0) + 1


def record_audit(
    conn: sqlite3.Connection,
    record: ConfigRecord,
    action: str,
    changes: dict[str, Any] | None = None,
    user_name: str = "system",
    change_reason: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO audit_log(config_id, config_type, action, user_name, changes, change_reason)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (int(record.id), record.config_type.value, action, user_name, json_dumps(changes or {}), change_reason),
    )
