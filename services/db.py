# services/db.py
import json, sqlite3, pandas as pd, logging
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Tuple

from services.utils import canonical_rarity, parse_item_blob


CONFIG = json.loads(Path(__file__).resolve().parent.parent.joinpath("config.json").read_text(encoding="utf-8"))
logger = logging.getLogger(__name__)

PACKET_COLUMNS = ["id", "name", "item", "prob_rate", "item_rarity", "is_active", "is_equipment", "updated_at"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS gacha_packets (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    name         TEXT NOT NULL,
    item         TEXT NOT NULL,
    prob_rate    TEXT NOT NULL,
    item_rarity  TEXT,
    is_active    INTEGER NOT NULL DEFAULT 1,
    is_equipment INTEGER NOT NULL DEFAULT 0,
    updated_at   TEXT
);
CREATE TABLE IF NOT EXISTS gacha_cost (
    id        INTEGER PRIMARY KEY,
    use_token INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS backend_users (
    serverid   INTEGER NOT NULL,
    userid     TEXT NOT NULL,
    real_money INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (serverid, userid)
);
CREATE TABLE IF NOT EXISTS gacha_history (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    serverid         INTEGER NOT NULL,
    username         TEXT NOT NULL,
    roleid           TEXT NOT NULL,
    cost             INTEGER NOT NULL,
    create_date      TEXT NOT NULL,
    sent_email       INTEGER NOT NULL DEFAULT 0,
    receive_item_id  INTEGER,
    receive_item_ids TEXT,
    remark           TEXT DEFAULT ''
);
CREATE TABLE IF NOT EXISTS mailbox (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    serverid   INTEGER NOT NULL,
    roleid     TEXT NOT NULL,
    title      TEXT,
    body       TEXT,
    items      TEXT,
    created_at TEXT
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect(db_path: str | None = None) -> sqlite3.Connection:
    path = db_path or CONFIG["sqlite_db_path"]
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    conn.commit()


def ensure_database(db_path: str | None = None) -> str:
    """Create the SQLite file (and its folder) with the gacha schema if missing."""
    path = db_path or CONFIG["sqlite_db_path"]
    Path(path).resolve().parent.mkdir(parents=True, exist_ok=True)
    conn = connect(path)
    try:
        init_schema(conn)
    finally:
        conn.close()
    return path


# -------- Catalog loader (admin views) --------

def _path_signature(raw_path: str | None) -> Tuple[str | None, float | None]:
    """Return a stable signature for a filesystem path (resolved path + mtime)."""
    if not raw_path:
        return None, None
    try:
        path = Path(raw_path).resolve(strict=False)
        return str(path), float(path.stat().st_mtime)
    except OSError:
        return str(Path(raw_path).resolve(strict=False)), None


def _packets_signature(db_path: str | None) -> Tuple[Tuple[str, Any], ...]:
    return tuple([
        ("source", CONFIG.get("data_source", "sqlite")),
        ("sqlite_db_path", _path_signature(db_path or CONFIG.get("sqlite_db_path"))),
        ("csv_path", _path_signature(CONFIG.get("csv_packets_path"))),
    ])


_PACKETS_CACHE: pd.DataFrame | None = None
_PACKETS_SIGNATURE: Tuple[Tuple[str, Any], ...] | None = None
_PACKETS_LOCK = RLock()


def _empty_packets_df() -> pd.DataFrame:
    return pd.DataFrame(columns=PACKET_COLUMNS)


def _load_sqlite(db_path: str) -> pd.DataFrame:
    con = sqlite3.connect(db_path)
    try:
        df = pd.read_sql_query("SELECT * FROM gacha_packets;", con, dtype={"prob_rate": str})
        print(f">>> SQLite packets loaded: {len(df)} rows from {db_path}")
        return df
    finally:
        con.close()


def _load_csv() -> pd.DataFrame:
    path = CONFIG.get("csv_packets_path")
    if not path:
        return _empty_packets_df()
    df = pd.read_csv(path, dtype={"prob_rate": str})
    print(f">>> CSV packets loaded: {len(df)} rows from {path}")
    return df


def _normalize_packets(df: pd.DataFrame) -> pd.DataFrame:
    rename = {
        "Name": "name",
        "Item": "item",
        "ProbRate": "prob_rate",
        "Rarity": "item_rarity",
        "rarity": "item_rarity",
        "IsActive": "is_active",
        "IsEquipment": "is_equipment",
    }
    have = set(df.columns)
    df = df.rename(columns={k: v for k, v in rename.items() if k in have})
    for col in PACKET_COLUMNS:
        if col not in df.columns:
            df[col] = None
    # prob_rate stays text: the ledger parses it exactly
    df["prob_rate"] = df["prob_rate"].fillna("").astype(str).str.strip()
    df["name"] = df["name"].fillna("").astype(str).str.strip()
    df["item_rarity"] = df["item_rarity"].fillna("unknown").astype(str).str.strip().str.lower()
    for c in ("is_active", "is_equipment"):
        df[c] = pd.to_numeric(df[c], errors="coerce").fillna(0).astype(int)
    return df


def load_packets(force_refresh: bool = False, db_path: str | None = None) -> pd.DataFrame:
    """Load the full packet catalog with simple caching. Not for the purchase path."""
    global _PACKETS_CACHE, _PACKETS_SIGNATURE

    path = db_path or CONFIG["sqlite_db_path"]
    signature = _packets_signature(path)
    with _PACKETS_LOCK:
        if not force_refresh and _PACKETS_CACHE is not None and _PACKETS_SIGNATURE == signature:
            return _PACKETS_CACHE.copy(deep=False)

    df = pd.DataFrame()
    if CONFIG.get("data_source", "sqlite") == "sqlite":
        try:
            df = _load_sqlite(path)
        except Exception as e:
            logger.warning("SQLite packet load failed (db=%s): %s", path, e)
            df = pd.DataFrame()
    if df.empty:
        try:
            df = _load_csv()
        except Exception as e:
            logger.warning("CSV packet load failed: %s", e)
            df = _empty_packets_df()

    df = _normalize_packets(df)
    with _PACKETS_LOCK:
        _PACKETS_CACHE = df
        _PACKETS_SIGNATURE = _packets_signature(path)
        return _PACKETS_CACHE.copy(deep=False)


# -------- Packets (live reads) --------

def _packet_row(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["item"] = parse_item_blob(d.get("item"))
    d["item_rarity"] = canonical_rarity(d.get("item_rarity"))
    return d


def fetch_active_packets(conn: sqlite3.Connection) -> list[dict]:
    """
    Current active draw-set, read fresh on every call. Order is highest
    stated rate first; the selector walks candidates in exactly this order.
    """
    cur = conn.execute("""
        SELECT * FROM gacha_packets
        WHERE is_active = 1
        ORDER BY CAST(prob_rate AS REAL) DESC, id ASC
    """)
    return [_packet_row(r) for r in cur.fetchall()]


def insert_packet(conn: sqlite3.Connection, *, name: str, item, prob_rate, item_rarity: str | None = None,
                  is_active: int = 1, is_equipment: int = 0) -> int:
    blob = item if isinstance(item, str) else json.dumps(item)
    with conn:
        cur = conn.execute(
            "INSERT INTO gacha_packets (name, item, prob_rate, item_rarity, is_active, is_equipment, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (name, blob, str(prob_rate), item_rarity, int(is_active), int(is_equipment), _now()),
        )
    return cur.lastrowid


def get_statistics(conn: sqlite3.Connection) -> dict:
    row = conn.execute("""
        SELECT
            COUNT(*) AS total_packets,
            SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END) AS active_packets,
            SUM(CASE WHEN is_equipment = 1 THEN 1 ELSE 0 END) AS equipment_packets,
            AVG(CAST(prob_rate AS REAL)) AS average_prob_rate,
            SUM(CASE WHEN is_active = 1 THEN CAST(prob_rate AS REAL) ELSE 0 END) AS sum_prob_rate
        FROM gacha_packets
    """).fetchone()
    return dict(row) if row else {}


# -------- Cost / wallet --------

def get_gacha_cost(conn: sqlite3.Connection) -> int | None:
    row = conn.execute("SELECT use_token FROM gacha_cost WHERE id = 1").fetchone()
    return int(row["use_token"]) if row else None


def set_gacha_cost(conn: sqlite3.Connection, use_token: int) -> None:
    with conn:
        conn.execute("INSERT OR REPLACE INTO gacha_cost (id, use_token) VALUES (1, ?)", (int(use_token),))


def upsert_user(conn: sqlite3.Connection, serverid: int, userid: str, real_money: int) -> None:
    with conn:
        conn.execute(
            "INSERT OR REPLACE INTO backend_users (serverid, userid, real_money) VALUES (?, ?, ?)",
            (int(serverid), str(userid), int(real_money)),
        )


def get_balance(conn: sqlite3.Connection, serverid: int, userid: str) -> int | None:
    row = conn.execute(
        "SELECT real_money FROM backend_users WHERE serverid = ? AND userid = ?",
        (int(serverid), str(userid)),
    ).fetchone()
    return None if row is None or row["real_money"] is None else int(row["real_money"])


def reduce_money(conn: sqlite3.Connection, serverid: int, userid: str, amount: int) -> int:
    """Deduct only if the balance covers it. Returns affected rows. Caller owns the transaction."""
    cur = conn.execute(
        "UPDATE backend_users SET real_money = real_money - ? "
        "WHERE serverid = ? AND userid = ? AND real_money >= ?",
        (int(amount), int(serverid), str(userid), int(amount)),
    )
    return cur.rowcount


def refund_money(conn: sqlite3.Connection, serverid: int, userid: str, amount: int) -> int:
    with conn:
        cur = conn.execute(
            "UPDATE backend_users SET real_money = real_money + ? WHERE serverid = ? AND userid = ?",
            (int(amount), int(serverid), str(userid)),
        )
    return cur.rowcount


# -------- History --------

def insert_history(conn: sqlite3.Connection, serverid: int, username: str, roleid, cost: int,
                   packet_id: int = 0) -> int:
    """Caller owns the transaction."""
    cur = conn.execute(
        "INSERT INTO gacha_history (serverid, username, roleid, cost, create_date, sent_email, receive_item_id, remark) "
        "VALUES (?, ?, ?, ?, ?, 0, ?, '')",
        (int(serverid), str(username), str(roleid), int(cost), _now(), int(packet_id)),
    )
    return cur.lastrowid


def update_history(conn: sqlite3.Connection, history_id: int, packet_ids: Iterable) -> int:
    ids = list(packet_ids)
    with conn:
        cur = conn.execute(
            "UPDATE gacha_history SET receive_item_ids = ?, receive_item_id = ? WHERE id = ?",
            (json.dumps(ids), ids[-1] if ids else 0, int(history_id)),
        )
    return cur.rowcount


def update_history_send_email(conn: sqlite3.Connection, history_id: int, sent_email: int, remark: str) -> int:
    with conn:
        cur = conn.execute(
            "UPDATE gacha_history SET sent_email = ?, remark = ? WHERE id = ?",
            (int(sent_email), remark or "", int(history_id)),
        )
    return cur.rowcount


def get_gacha_history(conn: sqlite3.Connection, roleid, offset: int = 0, limit: int = 20) -> list[dict]:
    cur = conn.execute(
        "SELECT * FROM gacha_history WHERE roleid = ? ORDER BY create_date DESC, id DESC LIMIT ? OFFSET ?",
        (str(roleid), int(limit), int(offset)),
    )
    out = []
    for r in cur.fetchall():
        d = dict(r)
        d["receive_item_ids"] = json.loads(d["receive_item_ids"]) if d.get("receive_item_ids") else []
        out.append(d)
    return out


# -------- Mailbox --------

def insert_mail(conn: sqlite3.Connection, serverid: int, roleid, title: str, body: str, items: list[dict]) -> int:
    with conn:
        cur = conn.execute(
            "INSERT INTO mailbox (serverid, roleid, title, body, items, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (int(serverid), str(roleid), title, body, json.dumps(items), _now()),
        )
    return cur.lastrowid


def count_mail(conn: sqlite3.Connection, roleid) -> int:
    row = conn.execute("SELECT COUNT(*) AS n FROM mailbox WHERE roleid = ?", (str(roleid),)).fetchone()
    return int(row["n"])
