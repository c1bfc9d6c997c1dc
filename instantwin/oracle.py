#!/usr/bin/env python3
# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin Signing Oracle

Off-ledger process holding an issuer's private key. Given a ticket id it
returns the issuer's signature over the canonical message.

Signing is deterministic (RFC 6979): asking twice for the same ticket
returns the same signature, and every issued signature is recorded.

Endpoints:
  GET  /status  - Signer address and public key
  POST /sign    - {"ticket_id": "0x..."} -> {"ticket_id", "signature"}

Run:
  instantwin-oracle --private-key 0x... --port 8091
"""

import argparse
import logging
import sys
from typing import Dict

import requests
from eth_account import Account
from eth_keys import keys
from flask import Flask, jsonify, request

from .config import Config, load_env_file, mask_secret, setup_logging
from .signature import Signature, sign_ticket
from .ticket_types import ticket_id_bytes

log = logging.getLogger(__name__)


class OracleError(Exception):
    """Signing oracle call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Oracle Error {code}: {message}")


class SigningOracle:
    """
    Issuer-side signer.

    Usage:
        oracle = SigningOracle("0x<private key>")
        sig = oracle.sign(ticket_id)
        registry.register_issuer(oracle.public_key, ...)
    """

    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)
        self._private_key = private_key
        self.issued: Dict[str, str] = {}

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def public_key(self) -> str:
        return keys.PrivateKey(bytes(self.account.key)).public_key.to_hex()

    def sign(self, ticket_id: str) -> Signature:
        """Sign a ticket id; the same ticket always gets the same signature."""
        ticket_id = ticket_id.lower()
        ticket_id_bytes(ticket_id)  # validate
        signature = sign_ticket(self._private_key, ticket_id)
        previous = self.issued.get(ticket_id)
        if previous and previous != signature.to_hex():
            # Unreachable with deterministic nonces
            raise RuntimeError(f"Conflicting signature for {ticket_id}")
        self.issued[ticket_id] = signature.to_hex()
        log.info(f"Signed ticket {ticket_id[:18]}...")
        return signature


def create_oracle_app(oracle: SigningOracle) -> Flask:
    app = Flask(__name__)

    @app.errorhandler(ValueError)
    def handle_bad_request(e: ValueError):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.route('/status')
    def status():
        return jsonify({
            "address": oracle.address,
            "public_key": oracle.public_key,
            "signed": len(oracle.issued),
        })

    @app.route('/sign', methods=['POST'])
    def sign():
        data = request.get_json(silent=True) or {}
        ticket_id = data.get("ticket_id")
        if not isinstance(ticket_id, str):
            raise ValueError("Missing field: ticket_id")
        signature = oracle.sign(ticket_id)
        return jsonify({"ticket_id": ticket_id.lower(), "signature": signature.to_hex()})

    return app


class OracleClient:
    """
    HTTP client for a signing oracle.

    Usage:
        oracle = OracleClient("http://127.0.0.1:8091")
        signature_hex = oracle.sign(ticket_id)
    """

    def __init__(self, url: str, timeout: int = 30):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def _call(self, method: str, path: str, payload: dict = None) -> dict:
        try:
            response = requests.request(
                method,
                f"{self.url}{path}",
                json=payload,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise OracleError(-1, f"Connection failed: {e}")

        try:
            result = response.json()
        except ValueError:
            raise OracleError(response.status_code, response.text[:200])

        if response.status_code != 200:
            raise OracleError(response.status_code, result.get("message", "unknown error"))
        return result

    def status(self) -> dict:
        return self._call("GET", "/status")

    def sign(self, ticket_id: str) -> str:
        """Signature hex for a ticket id."""
        return self._call("POST", "/sign", {"ticket_id": ticket_id})["signature"]


def main():
    load_env_file()
    config = Config.from_env()

    parser = argparse.ArgumentParser(description="InstantWin signing oracle")
    parser.add_argument("--host", default=config.oracle_host, help="Bind address")
    parser.add_argument("--port", type=int, default=config.oracle_port, help="HTTP port")
    parser.add_argument("--private-key", default="", help="Issuer private key (hex)")
    parser.add_argument("--log-level", default=config.log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    setup_logging(args.log_level)

    # Private key: args > INSTANTWIN_PRIVATE_KEY
    private_key = args.private_key or config.private_key
    if not private_key:
        log.error("No private key. Set INSTANTWIN_PRIVATE_KEY in .env or pass --private-key")
        return 1

    oracle = SigningOracle(private_key)
    log.info("=" * 60)
    log.info(f"Issuer key loaded: {mask_secret(private_key)}")
    log.info(f"Signer address: {oracle.address}")
    log.info("=" * 60)

    create_oracle_app(oracle).run(host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
