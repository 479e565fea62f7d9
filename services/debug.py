# services/debug.py
from flask import Blueprint, request, Response, current_app
import json
from services import db
from services.ledger import ValidateOptions, ValidationError, build_weight_table, candidates_from_packets, validate
from services.rng import SeededRandomSource
from services.selector import draw

bp = Blueprint("debug", __name__)


@bp.route("/health")
def health():
    df = db.load_packets(db_path=current_app.config.get("DB_PATH"))

    def uniques(col):
        if col in df.columns:
            return sorted(df[col].dropna().astype(str).str.strip().unique().tolist())[:50]
        return []

    stats = {
        "rows": int(len(df)),
        "columns": list(df.columns),
        "active_rows": int((df["is_active"] == 1).sum()) if "is_active" in df.columns else 0,
        "rarity_uniques": uniques("item_rarity"),
        "sample": df.head(5).to_dict(orient="records"),
    }
    return Response(json.dumps(stats, indent=2, default=str), mimetype="application/json")


@bp.route("/draw")
def debug_draw():
    """One fully diagnosed draw against the live active set. ?seed= makes it repeatable."""
    seed = request.args.get("seed")
    try:
        seed = int(seed) if seed not in (None, "") else None
    except ValueError:
        current_app.logger.warning("Invalid seed '%s' → unseeded", seed)
        seed = None

    conn = db.connect(current_app.config.get("DB_PATH"))
    try:
        packets = db.fetch_active_packets(conn)
    finally:
        conn.close()

    table = build_weight_table(candidates_from_packets(packets))
    payload = {
        "inputs": {"seed": seed, "active_packets": len(packets)},
        "weights": [
            {"index": e.index, "id": e.candidate.id, "weight": e.weight} for e in table.entries
        ],
        "total_weight": table.total_weight,
    }
    try:
        validate(table, ValidateOptions.from_config(current_app.config.get("GACHA", {})))
    except ValidationError as e:
        payload["validation"] = {"ok": False, "kind": e.kind, "diagnostics": e.diagnostics.to_dict()}
        return Response(json.dumps(payload, indent=2, default=str), mimetype="application/json")

    payload["validation"] = {"ok": True}
    payload["draw"] = draw(table, SeededRandomSource(seed)).to_dict()
    return Response(json.dumps(payload, indent=2, default=str), mimetype="application/json")
