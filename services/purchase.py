# services/purchase.py
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Callable

from services import db
from services.ledger import (
    ValidateOptions, ValidationError, build_weight_table, candidates_from_packets, validate,
)
from services.rng import RandomSource, default_random_source
from services.selector import get_weighted_random_packet
from services.utils import to_game_items

CONFIG = json.loads(Path(__file__).resolve().parent.parent.joinpath("config.json").read_text(encoding="utf-8"))
GACHA_CFG = CONFIG.get("gacha", {})
logger = logging.getLogger(__name__)

# deliver(serverid, roleid, title, body, game_items) -> True on success
Deliver = Callable[[int, str, str, str, list], bool]


class PurchaseError(Exception):
    def __init__(self, message: str, status: int = 400, diagnostics: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.diagnostics = diagnostics


def mailbox_delivery(conn: sqlite3.Connection) -> Deliver:
    """Default delivery: drop the reward into the player's mailbox table."""
    def _deliver(serverid, roleid, title, body, items) -> bool:
        try:
            db.insert_mail(conn, serverid, roleid, title, body, items)
        except sqlite3.Error as e:
            logger.error("Mailbox delivery failed for role %s: %s", roleid, e)
            return False
        return True
    return _deliver


def buy_gacha_packets(
    conn: sqlite3.Connection,
    *,
    serverid: int,
    userid: str,
    roleid,
    num: int = 1,
    source: RandomSource | None = None,
    deliver: Deliver | None = None,
    options: ValidateOptions | None = None,
) -> dict:
    """
    Charge for `num` pulls and deliver one independently drawn packet per pull.

    The draw-set is validated before any money moves, so a broken
    probability configuration never charges the player. A delivery failure
    refunds the whole cost.
    """
    max_pulls = int(GACHA_CFG.get("max_pulls_per_purchase", 100))
    if num < 1 or num > max_pulls:
        raise PurchaseError(f"num must be between 1 and {max_pulls}")

    opts = options or ValidateOptions.from_config(GACHA_CFG)
    src = source or default_random_source()
    send = deliver or mailbox_delivery(conn)

    packets = db.fetch_active_packets(conn)
    if not packets:
        raise PurchaseError("Gacha active packets not found")
    candidates = candidates_from_packets(packets)
    try:
        validate(build_weight_table(candidates), opts)
    except ValidationError as e:
        logger.error("Gacha probabilities rejected, no charge made: %s %s", e.message, e.diagnostics.to_dict())
        raise PurchaseError(f"Gacha probability configuration is invalid: {e.message}",
                            diagnostics=e.diagnostics.to_dict()) from e

    unit_cost = db.get_gacha_cost(conn)
    if not unit_cost:
        raise PurchaseError("Gacha cost not found")
    cost = unit_cost * num

    balance = db.get_balance(conn, serverid, userid)
    if balance is None:
        raise PurchaseError("UserBackend not found")
    if balance < cost:
        raise PurchaseError("Insufficient balance")

    with conn:
        if db.reduce_money(conn, serverid, userid, cost) == 0:
            raise PurchaseError("Failed to reduce money")
        history_id = db.insert_history(conn, serverid, userid, roleid, cost)

    title = GACHA_CFG.get("mail_title", "Gacha item")
    body = GACHA_CFG.get("mail_body", "")
    won: list[dict] = []
    try:
        for _ in range(num):
            # each pull is an independent trial over a freshly built table
            result = get_weighted_random_packet(candidates, opts, src)
            if not result.ok:
                db.refund_money(conn, serverid, userid, cost)
                db.update_history_send_email(conn, history_id, 0, f"draw failed: {result.diagnostics.error}")
                raise PurchaseError("Gacha draw failed", diagnostics=result.diagnostics.to_dict())

            packet = result.selected
            items = to_game_items((packet.get("item") or {}).get("items"))
            if not send(serverid, roleid, title, body, items):
                db.refund_money(conn, serverid, userid, cost)
                db.update_history_send_email(conn, history_id, 0, "send mail failed, refunded")
                logger.error("Gacha delivery failed for role %s; refunded %d", roleid, cost)
                raise PurchaseError("Failed to send mail gacha")
            won.append(packet)
    except PurchaseError:
        raise
    except Exception as e:
        db.refund_money(conn, serverid, userid, cost)
        db.update_history_send_email(conn, history_id, 0, f"{type(e).__name__}: {e}, refunded")
        logger.exception("Gacha delivery raised for role %s; refunded %d", roleid, cost)
        raise PurchaseError("Failed to send mail gacha") from e

    db.update_history_send_email(conn, history_id, 1, "")
    db.update_history(conn, history_id, [p.get("id") for p in won])
    logger.info("Gacha purchase: user=%s role=%s pulls=%d cost=%d source=%s",
                userid, roleid, num, cost, src.name)
    return {"history_id": history_id, "cost": cost, "items": won}
