#!/usr/bin/env python3
# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin Resolver - ticket resolution and refund daemon

Issuer mode (--issuer-id):
  1. List the issuer's COMMITTED tickets
  2. Ask the signing oracle for each ticket's signature
  3. Submit it to the API (resolve)

Buyer mode (--buyer):
  1. List the buyer's COMMITTED tickets
  2. Call refund on every ticket whose timeout has passed

Failures are logged and retried on the next poll. The core never retries.
"""

import argparse
import logging
import signal
import sys
import time
from typing import Callable, Dict, List, Optional

from .client import APIClient, APIError
from .config import Config, load_env_file, setup_logging
from .oracle import OracleClient, OracleError

log = logging.getLogger(__name__)

# Errors that mean another party already finalized the ticket
FINAL_ERRORS = ("already_resolved", "already_refunded")


class ResolverDaemon:
    """Polls the API and drives tickets to a terminal state."""

    def __init__(self, api: APIClient, oracle: Optional[OracleClient] = None,
                 issuer_id: int = 0, buyer: str = "",
                 clock: Optional[Callable[[], float]] = None):
        self.api = api
        self.oracle = oracle
        self.issuer_id = issuer_id
        self.buyer = buyer
        self.clock = clock or time.time
        self.stats: Dict[str, int] = {"won": 0, "lost": 0, "refunded": 0, "failed": 0}
        self.running = False

    def process_committed(self) -> int:
        """Sign and resolve the issuer's committed tickets. Returns tickets resolved."""
        if not self.oracle or not self.issuer_id:
            return 0

        try:
            pending = self.api.list_tickets(self.issuer_id, status="committed")
        except APIError as e:
            log.error(f"Failed to list committed tickets: {e}")
            return 0

        if not pending:
            log.debug("No committed tickets")
            return 0

        log.info(f"Processing {len(pending)} committed ticket(s)")
        resolved = 0
        for ticket in pending:
            ticket_id = ticket["ticket_id"]
            try:
                signature = self.oracle.sign(ticket_id)
                result = self.api.resolve(ticket_id, signature)
            except OracleError as e:
                log.error(f"Oracle failed for {ticket_id[:18]}...: {e}")
                self.stats["failed"] += 1
                continue
            except APIError as e:
                if e.code in FINAL_ERRORS:
                    log.debug(f"Ticket {ticket_id[:18]}... already final ({e.code})")
                else:
                    log.error(f"Resolve failed for {ticket_id[:18]}...: {e}")
                    self.stats["failed"] += 1
                continue

            resolved += 1
            if result["status"] == "resolved_win":
                self.stats["won"] += 1
                log.info(f"Ticket {ticket_id[:18]}... WON ({result['payout']})")
            else:
                self.stats["lost"] += 1
                log.info(f"Ticket {ticket_id[:18]}... lost")
        return resolved

    def _buyer_tickets(self) -> List[dict]:
        if self.issuer_id:
            issuer_ids = [self.issuer_id]
        else:
            issuer_ids = [i["issuer_id"] for i in self.api.list_issuers()]
        tickets = []
        for issuer_id in issuer_ids:
            tickets.extend(self.api.list_tickets(issuer_id, status="committed", buyer=self.buyer))
        return tickets

    def refund_expired(self) -> int:
        """Refund the buyer's tickets whose timeout window has passed."""
        if not self.buyer:
            return 0

        try:
            tickets = self._buyer_tickets()
        except APIError as e:
            log.error(f"Failed to list buyer tickets: {e}")
            return 0

        now = int(self.clock())
        refunded = 0
        for ticket in tickets:
            if now <= ticket["expires_at"]:
                continue
            ticket_id = ticket["ticket_id"]
            try:
                result = self.api.refund(ticket_id)
            except APIError as e:
                if e.code in FINAL_ERRORS:
                    log.debug(f"Ticket {ticket_id[:18]}... already final ({e.code})")
                else:
                    log.warning(f"Refund failed for {ticket_id[:18]}...: {e}")
                    self.stats["failed"] += 1
                continue
            refunded += 1
            self.stats["refunded"] += 1
            log.info(f"Ticket {ticket_id[:18]}... refunded ({result['payout']})")
        return refunded

    def run_once(self):
        self.process_committed()
        self.refund_expired()

    def run(self, poll_interval: int = 15):
        log.info("=" * 60)
        log.info("InstantWin resolver starting...")
        log.info(f"  API: {self.api.url}")
        if self.oracle:
            log.info(f"  Oracle: {self.oracle.url} (issuer {self.issuer_id})")
        if self.buyer:
            log.info(f"  Refunding for buyer: {self.buyer}")
        log.info(f"  Poll interval: {poll_interval}s")
        log.info("=" * 60)

        self.running = True
        while self.running:
            try:
                self.run_once()
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break
            except Exception as e:
                log.error(f"Error in main loop: {e}")

            time.sleep(poll_interval)

    def stop(self):
        """Finish the current pass and leave the loop."""
        self.running = False


# =============================================================================
# MAIN
# =============================================================================

def main():
    load_env_file()
    config = Config.from_env()

    parser = argparse.ArgumentParser(description="InstantWin resolver daemon")
    parser.add_argument("--api-url", default=config.api_url, help="InstantWin API URL")
    parser.add_argument("--oracle-url", default=config.oracle_url, help="Signing oracle URL")
    parser.add_argument("--issuer-id", type=int, default=config.issuer_id,
                        help="Resolve this issuer's tickets")
    parser.add_argument("--buyer", default=config.buyer,
                        help="Refund this buyer's expired tickets")
    parser.add_argument("--poll-interval", type=int, default=config.poll_interval,
                        help="Poll interval in seconds")
    parser.add_argument("--log-level", default=config.log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    args = parser.parse_args()

    setup_logging(args.log_level)

    if not args.issuer_id and not args.buyer:
        log.error("Nothing to do: pass --issuer-id and/or --buyer")
        return 1

    api = APIClient(args.api_url, timeout=config.request_timeout)
    oracle = OracleClient(args.oracle_url, timeout=config.request_timeout) if args.issuer_id else None
    daemon = ResolverDaemon(api, oracle, issuer_id=args.issuer_id, buyer=args.buyer)

    if args.once:
        daemon.run_once()
        log.info(f"Stats: {daemon.stats}")
    else:
        def handle_sigterm(signum, frame):
            log.info("SIGTERM received, stopping after this pass")
            daemon.stop()

        signal.signal(signal.SIGTERM, handle_sigterm)
        daemon.run(args.poll_interval)
    return 0


if __name__ == "__main__":
    sys.exit(main())
