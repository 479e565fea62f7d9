# services/utils.py
import json


def parse_int(val, default: int, lo: int | None = None, hi: int | None = None, warn=None) -> int:
    try:
        x = int(val)
    except Exception:
        if warn: warn(f"Invalid int '{val}', defaulting to {default}")
        x = default
    if lo is not None: x = max(lo, x)
    if hi is not None: x = min(hi, x)
    return x


def normalize_token(s: str | None) -> str:
    return str(s or "").lower().strip()


def canonical_rarity(s: str | None) -> str:
    s = normalize_token(s)
    return s or "unknown"


def parse_item_blob(raw) -> dict:
    """
    The packet 'item' column holds JSON like {"items": [{"item_id": .., "quantity": ..}]}.
    Accept a dict as-is; anything undecodable becomes an empty item list.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {"items": []}
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        return {"items": []}
    return obj if isinstance(obj, dict) else {"items": []}


def to_game_items(items: list[dict] | None) -> list[dict]:
    """
    Convert packet items to the compact in-game mail format:
      {i: item_id, n: quantity} plus q/add/bper for equipment.
    """
    out = []
    for it in items or []:
        if not isinstance(it, dict):
            continue
        g = {"i": it.get("item_id"), "n": it.get("quantity")}
        if it.get("type") == "equipment":
            if it.get("rarity") not in (None, ""):
                try:
                    g["q"] = int(it["rarity"])
                except (TypeError, ValueError):
                    pass
            if it.get("add_attributes"):
                g["add"] = it["add_attributes"]
            if it.get("bper"):
                g["bper"] = it["bper"]
        out.append(g)
    return out
