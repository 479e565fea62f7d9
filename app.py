# app.py — gacha packet service (Flask)

from flask import Flask, request, current_app, jsonify

# Core project imports from the services package
from services import db
from services.db import CONFIG
from services.ledger import ValidateOptions, candidates_from_packets
from services.purchase import PurchaseError, buy_gacha_packets
from services.report import analyze_prob_rates, simulate_draws
from services.rng import SeededRandomSource, default_random_source
from services.utils import parse_int

# Optional: debug blueprint (if exists)
try:
    from services.debug import bp as debug_bp
except ImportError:
    debug_bp = None

app = Flask(__name__)
app.config["DB_PATH"] = CONFIG.get("sqlite_db_path", "data/gacha.sqlite")
app.config["GACHA"] = CONFIG.get("gacha", {})
app.config["RANDOM_SOURCE"] = None      # tests may pin a source here
if debug_bp is not None:
    app.register_blueprint(debug_bp, url_prefix="/debug")

GACHA_CFG = app.config["GACHA"]


# ----------------------------
# Helper utilities
# ----------------------------
def _open_db():
    return db.connect(current_app.config["DB_PATH"])


def _random_source():
    return current_app.config.get("RANDOM_SOURCE") or default_random_source()


def _fail(message: str, status: int = 400, **extra):
    return jsonify(success=False, message=message, **extra), status


def _warn(msg: str):
    current_app.logger.warning(msg)


# ----------------------------
# Routes
# ----------------------------
@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/gacha-packets/active")
def get_active_packets():
    try:
        conn = _open_db()
        try:
            packets = db.fetch_active_packets(conn)
            cost = db.get_gacha_cost(conn)
        finally:
            conn.close()
        return jsonify(success=True, data={
            "active_packets": packets,
            "total": len(packets),
            "gacha_cost": cost,
        })
    except Exception:
        current_app.logger.exception("Error getting active gacha packets")
        return _fail("Failed to get active gacha packets", 500)


@app.post("/api/gacha-packets/buyGachaPacket")
def buy_gacha_packet():
    body = request.get_json(silent=True) or {}
    serverid = parse_int(body.get("serverid"), 0)
    userid = str(body.get("userid") or "").strip()
    roleid = str(body.get("roleid") or "").strip()
    num = parse_int(request.args.get("num") or body.get("num") or 1, 1, warn=_warn)

    if not userid or not roleid or serverid == 0:
        return _fail("Invalid serverid, userid or roleid")

    conn = _open_db()
    try:
        result = buy_gacha_packets(
            conn,
            serverid=serverid,
            userid=userid,
            roleid=roleid,
            num=num,
            source=_random_source(),
            options=ValidateOptions.from_config(GACHA_CFG),
        )
    except PurchaseError as e:
        extra = {"diagnostics": e.diagnostics} if e.diagnostics else {}
        return _fail(e.message, e.status, **extra)
    except Exception:
        current_app.logger.exception("Error buying gacha packet")
        return _fail("Failed to buy gacha packet", 500)
    finally:
        conn.close()

    return jsonify(success=True, data={"items": result["items"], "cost": result["cost"]})


@app.get("/api/gacha-packets/history")
def get_gacha_history():
    roleid = (request.args.get("roleid") or "").strip()
    if not roleid:
        return _fail("Invalid roleid")
    page = parse_int(request.args.get("page"), 1, lo=1, warn=_warn)
    limit = parse_int(request.args.get("limit"), 20, lo=1, hi=200, warn=_warn)

    try:
        conn = _open_db()
        try:
            history = db.get_gacha_history(conn, roleid, (page - 1) * limit, limit)
        finally:
            conn.close()
    except Exception:
        current_app.logger.exception("Error getting gacha history")
        return _fail("Failed to get gacha history", 500)
    return jsonify(success=True, data=history, roleid=roleid)


@app.get("/api/gacha-packets/statistics")
def get_statistics():
    try:
        conn = _open_db()
        try:
            statistics = db.get_statistics(conn)
            packets = db.fetch_active_packets(conn)
        finally:
            conn.close()
        analysis = analyze_prob_rates(candidates_from_packets(packets))
        return jsonify(success=True, data={
            "statistics": statistics,
            "prob_rate_analysis": analysis.to_dict(),
        })
    except Exception:
        current_app.logger.exception("Error getting gacha packet statistics")
        return _fail("Failed to get gacha packet statistics", 500)


@app.get("/api/gacha-packets/test-random")
def test_weighted_random():
    """Admin check: run many independent draws and compare observed vs stated rates."""
    max_iter = int(GACHA_CFG.get("max_test_iterations", 100000))
    iterations = parse_int(request.args.get("iterations"), int(GACHA_CFG.get("default_test_iterations", 1000)),
                           warn=_warn)
    if iterations < 1 or iterations > max_iter:
        return _fail(f"iterations must be between 1 and {max_iter}")

    seed = request.args.get("seed")
    source = SeededRandomSource(parse_int(seed, 0)) if seed else _random_source()

    try:
        conn = _open_db()
        try:
            packets = db.fetch_active_packets(conn)
        finally:
            conn.close()
        if not packets:
            return _fail("No active gacha packets found")

        data = simulate_draws(candidates_from_packets(packets), iterations, source,
                              ValidateOptions.from_config(GACHA_CFG))
        if data["failures"]:
            current_app.logger.error("test-random: %d of %d draws failed: %s",
                                     data["failures"], iterations, data["last_error"])
        return jsonify(success=True, data=data)
    except Exception:
        current_app.logger.exception("Error testing weighted random")
        return _fail("Failed to test weighted random", 500)


if __name__ == "__main__":
    # For local dev convenience; in production use a WSGI server
    db.ensure_database(app.config["DB_PATH"])
    app.run(host="0.0.0.0", port=5000, debug=True)
