import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services import db
from services.utils import canonical_rarity, parse_int, parse_item_blob, to_game_items


def test_parse_int_defaults_and_clamps():
    warnings = []
    assert parse_int("7", 1) == 7
    assert parse_int("x", 3, warn=warnings.append) == 3
    assert warnings == ["Invalid int 'x', defaulting to 3"]
    assert parse_int("500", 1, hi=200) == 200
    assert parse_int("-4", 1, lo=1) == 1


def test_item_blob_decoding():
    assert parse_item_blob('{"items": [{"item_id": 1}]}') == {"items": [{"item_id": 1}]}
    assert parse_item_blob({"items": []}) == {"items": []}
    assert parse_item_blob("not json") == {"items": []}
    assert parse_item_blob("[1, 2]") == {"items": []}
    assert parse_item_blob(None) == {"items": []}


def test_game_item_format():
    items = [
        {"item_id": 1, "quantity": 500},
        {"item_id": 101, "quantity": 1, "type": "equipment", "rarity": "4",
         "add_attributes": [{"k": 1}], "bper": 10},
        {"item_id": 102, "quantity": 1, "type": "equipment", "rarity": "bad"},
        "junk",
    ]
    assert to_game_items(items) == [
        {"i": 1, "n": 500},
        {"i": 101, "n": 1, "q": 4, "add": [{"k": 1}], "bper": 10},
        {"i": 102, "n": 1},
    ]
    assert to_game_items(None) == []


def test_canonical_rarity():
    assert canonical_rarity("  Legendary ") == "legendary"
    assert canonical_rarity(None) == "unknown"


def test_ensure_database_creates_schema(tmp_path):
    path = db.ensure_database(str(tmp_path / "nested" / "gacha.sqlite"))
    conn = db.connect(path)
    try:
        assert db.fetch_active_packets(conn) == []
        assert db.get_gacha_cost(conn) is None
    finally:
        conn.close()


def test_catalog_loader_keeps_rates_as_text(tmp_path):
    path = db.ensure_database(str(tmp_path / "gacha.sqlite"))
    conn = db.connect(path)
    db.insert_packet(conn, name="A", item={"items": []}, prob_rate="12.3456789", item_rarity="Epic")
    db.insert_packet(conn, name="B", item={"items": []}, prob_rate="0.5", is_active=0)
    conn.close()

    df = db.load_packets(force_refresh=True, db_path=path)
    assert list(df["prob_rate"]) == ["12.3456789", "0.5"]
    assert list(df["item_rarity"]) == ["epic", "unknown"]
    assert list(df["is_active"]) == [1, 0]
