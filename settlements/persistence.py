from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable


def utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                insurer_id INTEGER NOT NULL,
                insurer_name TEXT NOT NULL,
                insurer_acronym TEXT,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                provided_services_count INTEGER NOT NULL,
                total TEXT NOT NULL,
                settlement_key TEXT,
                informed_date TEXT,
                informed_amount TEXT,
                observations TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settlement_agreements (
                settlement_id INTEGER NOT NULL,
                agreement_key TEXT NOT NULL,
                plan_id INTEGER,
                plan_name TEXT NOT NULL,
                agreement_id INTEGER,
                provided_services_count INTEGER NOT NULL,
                subtotal TEXT NOT NULL,
                PRIMARY KEY (settlement_id, agreement_key),
                FOREIGN KEY (settlement_id) REFERENCES settlements(id)
            );

            CREATE TABLE IF NOT EXISTS settlement_services (
                settlement_id INTEGER NOT NULL,
                provided_service_id INTEGER NOT NULL,
                agreement_key TEXT NOT NULL,
                amount TEXT NOT NULL,
                PRIMARY KEY (settlement_id, provided_service_id),
                FOREIGN KEY (settlement_id) REFERENCES settlements(id)
            );

            CREATE TABLE IF NOT EXISTS settlement_exclusions (
                settlement_id INTEGER NOT NULL,
                provided_service_id INTEGER NOT NULL,
                PRIMARY KEY (settlement_id, provided_service_id),
                FOREIGN KEY (settlement_id) REFERENCES settlements(id)
            );
            """
        )


def save_settlement(
    db_path: Path,
    header: dict[str, Any],
    agreements: list[dict[str, Any]],
    services: list[dict[str, Any]],
    excluded_ids: Iterable[int],
) -> int:
    now = utc_now()
    with get_conn(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO settlements(
                insurer_id, insurer_name, insurer_acronym, type, status,
                period_start, period_end, provided_services_count, total,
                settlement_key, observations, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 'PENDING', ?, ?, ?, ?, ?, '', ?, ?)
            """,
            (
                header["insurer_id"],
                header["insurer_name"],
                header.get("insurer_acronym"),
                header["type"],
                header["period_start"],
                header["period_end"],
                header["provided_services_count"],
                str(header["total"]),
                header.get("settlement_key"),
                now,
                now,
            ),
        )
        settlement_id = int(cur.lastrowid)
        for row in agreements:
            conn.execute(
                """
                INSERT INTO settlement_agreements(
                    settlement_id, agreement_key, plan_id, plan_name, agreement_id,
                    provided_services_count, subtotal
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    settlement_id,
                    row["agreement_key"],
                    row.get("plan_id"),
                    row["plan_name"],
                    row.get("agreement_id"),
                    row["provided_services_count"],
                    str(row["subtotal"]),
                ),
            )
        conn.executemany(
            """
            INSERT INTO settlement_services(settlement_id, provided_service_id, agreement_key, amount)
            VALUES (?, ?, ?, ?)
            """,
            [(settlement_id, s["id"], s["agreement_key"], str(s["amount"])) for s in services],
        )
        conn.executemany(
            "INSERT OR IGNORE INTO settlement_exclusions(settlement_id, provided_service_id) VALUES (?, ?)",
            [(settlement_id, int(i)) for i in excluded_ids],
        )
        return settlement_id


def get_settlement(db_path: Path, settlement_id: int) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,)).fetchone()
        if row is None:
            return None
        agreements = conn.execute(
            """
            SELECT agreement_key, plan_id, plan_name, agreement_id, provided_services_count, subtotal
            FROM settlement_agreements
            WHERE settlement_id = ?
            ORDER BY plan_name, agreement_key
            """,
            (settlement_id,),
        ).fetchall()
        result = dict(row)
        result["agreements"] = [dict(a) for a in agreements]
        return result


def list_settlements(
    db_path: Path,
    insurer_id: int | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if insurer_id is not None:
        clauses.append("insurer_id = ?")
        params.append(insurer_id)
    if date_from:
        clauses.append("period_end >= ?")
        params.append(date_from)
    if date_to:
        clauses.append("period_start <= ?")
        params.append(date_to)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM settlements
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


def list_settled_service_ids(db_path: Path, settlement_id: int) -> list[int]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT provided_service_id FROM settlement_services WHERE settlement_id = ? ORDER BY provided_service_id",
            (settlement_id,),
        ).fetchall()
        return [int(r["provided_service_id"]) for r in rows]


def list_excluded_ids(db_path: Path, settlement_id: int) -> list[int]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT provided_service_id FROM settlement_exclusions WHERE settlement_id = ? ORDER BY provided_service_id",
            (settlement_id,),
        ).fetchall()
        return [int(r["provided_service_id"]) for r in rows]


def inform_settlement(
    db_path: Path,
    settlement_id: int,
    informed_amount: str,
    informed_date: str,
    observations: str | None = None,
) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        exists = conn.execute(
            "SELECT id FROM settlements WHERE id = ? AND status = 'PENDING'",
            (settlement_id,),
        ).fetchone()
        if exists is None:
            return None
        conn.execute(
            """
            UPDATE settlements
            SET status = 'INFORMED',
                informed_amount = ?,
                informed_date = ?,
                observations = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (informed_amount, informed_date, observations or "", utc_now(), settlement_id),
        )
        row = conn.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,)).fetchone()
        return None if row is None else dict(row)


def cancel_settlement(db_path: Path, settlement_id: int, observations: str | None = None) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        exists = conn.execute(
            "SELECT id FROM settlements WHERE id = ? AND status IN ('PENDING', 'INFORMED')",
            (settlement_id,),
        ).fetchone()
        if exists is None:
            return None
        conn.execute(
            """
            UPDATE settlements
            SET status = 'CANCEL',
                observations = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (observations or "", utc_now(), settlement_id),
        )
        row = conn.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,)).fetchone()
        return None if row is None else dict(row)


def settled_service_ids(db_path: Path) -> set[int]:
    """Ids of provided services already held by a settlement that was not cancelled."""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            """
            SELECT s.provided_service_id
            FROM settlement_services s
            JOIN settlements st ON st.id = s.settlement_id
            WHERE st.status != 'CANCEL'
            """
        ).fetchall()
        return {int(r["provided_service_id"]) for r in rows}
