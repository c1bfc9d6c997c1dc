#!/usr/bin/env python3
# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin Server - REST API over the issuer registry

Endpoints:
  GET  /health                              - Liveness
  GET  /api/status                          - Registry stats
  POST /api/issuers                         - Register issuer
  GET  /api/issuers                         - List issuers
  GET  /api/issuers/<id>                    - Issuer details + reputation
  POST /api/issuers/<id>/deposit            - Add operating capital
  POST /api/issuers/<id>/withdraw           - Withdraw free balance (controller)
  GET  /api/issuers/<id>/tickets            - List tickets (?status=&buyer=)
  POST /api/tickets                         - Purchase ticket
  GET  /api/tickets/<ticket_id>             - Ticket details
  POST /api/tickets/<ticket_id>/resolve     - Submit issuer signature
  POST /api/tickets/<ticket_id>/refund      - Timeout refund
  GET  /api/balances/<identity>             - Payouts received (in-memory rail)
"""

import argparse
import logging
import time
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import Config, load_env_file, setup_logging
from .errors import InstantWinError
from .escrow import BalanceBook
from .registry import IssuerRegistry
from .ticket_types import TicketStatus

log = logging.getLogger(__name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _int_field(data: dict, name: str, default: Optional[int] = None) -> int:
    """Read an integer field; uint256 values may arrive as decimal or 0x strings."""
    value = data.get(name, default)
    if value is None:
        raise ValueError(f"Missing field: {name}")
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer for {name}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0) if value.startswith("0x") else int(value)
        except ValueError:
            pass
    raise ValueError(f"Invalid integer for {name}: {value!r}")


def _str_field(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing field: {name}")
    return value


def create_app(registry: IssuerRegistry, state_file: str = "") -> Flask:
    """Build the Flask app around a registry."""
    app = Flask(__name__)
    CORS(app)

    def persist():
        if state_file:
            registry.save(state_file)

    @app.errorhandler(InstantWinError)
    def handle_protocol_error(e: InstantWinError):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(ValueError)
    def handle_bad_request(e: ValueError):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    # =========================================================================
    # STATUS
    # =========================================================================

    @app.route('/health')
    def health():
        return jsonify({"status": "ok", "timestamp": int(time.time())})

    @app.route('/api/status')
    def api_status():
        issuers = registry.list_issuers()
        return jsonify({
            "issuers": len(issuers),
            "tickets": len(registry.ticket_index),
            "minimum_deposit": registry.minimum_deposit,
            "persistence_file": state_file or None,
            "timestamp": int(time.time()),
        })

    # =========================================================================
    # ISSUERS
    # =========================================================================

    @app.route('/api/issuers', methods=['POST'])
    def api_register_issuer():
        data = _json_body()
        issuer_id = registry.register_issuer(
            public_key=_str_field(data, "public_key"),
            ticket_price=_int_field(data, "ticket_price"),
            prize_amount=_int_field(data, "prize_amount"),
            odds_denominator=_int_field(data, "odds_denominator"),
            timeout_window=_int_field(data, "timeout_window"),
            deposit=_int_field(data, "deposit"),
            controller=data.get("controller") or "",
        )
        persist()
        return jsonify(registry.issuer_view(issuer_id)), 201

    @app.route('/api/issuers')
    def api_list_issuers():
        issuers = [registry.issuer_view(i.issuer_id) for i in registry.list_issuers()]
        return jsonify({"issuers": issuers, "count": len(issuers)})

    @app.route('/api/issuers/<int:issuer_id>')
    def api_get_issuer(issuer_id):
        return jsonify(registry.issuer_view(issuer_id))

    @app.route('/api/issuers/<int:issuer_id>/deposit', methods=['POST'])
    def api_deposit(issuer_id):
        data = _json_body()
        balance = registry.deposit(issuer_id, _int_field(data, "amount"))
        persist()
        return jsonify({"issuer_id": issuer_id, "operating_balance": balance})

    @app.route('/api/issuers/<int:issuer_id>/withdraw', methods=['POST'])
    def api_withdraw(issuer_id):
        data = _json_body()
        balance = registry.withdraw_operating_balance(
            issuer_id, _int_field(data, "amount"), _str_field(data, "caller"))
        persist()
        return jsonify({"issuer_id": issuer_id, "operating_balance": balance})

    @app.route('/api/issuers/<int:issuer_id>/tickets')
    def api_issuer_tickets(issuer_id):
        ledger = registry.ledger(issuer_id)
        status_arg = request.args.get("status", "")
        status = TicketStatus(status_arg) if status_arg else None
        tickets = ledger.list_tickets(status=status, buyer=request.args.get("buyer", ""))
        return jsonify({
            "issuer_id": issuer_id,
            "tickets": [ledger.ticket_view(t) for t in tickets],
            "count": len(tickets),
        })

    # =========================================================================
    # TICKETS
    # =========================================================================

    @app.route('/api/tickets', methods=['POST'])
    def api_purchase():
        data = _json_body()
        ticket = registry.purchase(
            issuer_id=_int_field(data, "issuer_id"),
            buyer=_str_field(data, "buyer"),
            ticket_number=_int_field(data, "ticket_number"),
            payment=_int_field(data, "payment"),
        )
        persist()
        return jsonify(registry.ticket_view(ticket.ticket_id)), 201

    @app.route('/api/tickets/<ticket_id>')
    def api_get_ticket(ticket_id):
        return jsonify(registry.ticket_view(ticket_id))

    @app.route('/api/tickets/<ticket_id>/resolve', methods=['POST'])
    def api_resolve(ticket_id):
        data = _json_body()
        ticket = registry.resolve(ticket_id, _str_field(data, "signature"))
        persist()
        return jsonify(registry.ticket_view(ticket.ticket_id))

    @app.route('/api/tickets/<ticket_id>/refund', methods=['POST'])
    def api_refund(ticket_id):
        ticket = registry.refund_timeout(ticket_id)
        persist()
        return jsonify(registry.ticket_view(ticket.ticket_id))

    @app.route('/api/balances/<identity>')
    def api_balance(identity):
        if not isinstance(registry.rail, BalanceBook):
            return jsonify({"error": "unsupported", "message": "External payment rail"}), 501
        return jsonify({"identity": identity, "balance": registry.rail.balance_of(identity)})

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    load_env_file()
    config = Config.from_env()

    parser = argparse.ArgumentParser(description="InstantWin API server")
    parser.add_argument("--host", default=config.host, help="Bind address")
    parser.add_argument("--port", type=int, default=config.port, help="HTTP port")
    parser.add_argument("--state-file", default=config.state_file,
                        help="JSON state file (empty = in-memory)")
    parser.add_argument("--minimum-deposit", type=int, default=config.minimum_deposit,
                        help="Minimum issuer deposit")
    parser.add_argument("--log-level", default=config.log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    setup_logging(args.log_level)

    if args.state_file:
        registry = IssuerRegistry.load(args.state_file, minimum_deposit=args.minimum_deposit)
    else:
        registry = IssuerRegistry(minimum_deposit=args.minimum_deposit)

    app = create_app(registry, state_file=args.state_file)
    log.info(f"InstantWin API on {args.host}:{args.port} "
             f"({len(registry.accounts)} issuers loaded)")
    app.run(host=args.host, port=args.port, threaded=True)


if __name__ == "__main__":
    main()
