# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Configuration

Defaults, overridden by INSTANTWIN_* environment variables (optionally
loaded from a .env file), overridden in turn by command line flags.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

ENV_PREFIX = "INSTANTWIN_"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


@dataclass
class Config:
    # API server
    host: str = "127.0.0.1"
    port: int = 8090
    state_file: str = ""            # Empty = in-memory only
    minimum_deposit: int = 1000

    # Signing oracle service
    oracle_host: str = "127.0.0.1"
    oracle_port: int = 8091
    private_key: str = ""           # Issuer key (NEVER commit!)

    # Resolver daemon
    api_url: str = "http://127.0.0.1:8090"
    oracle_url: str = "http://127.0.0.1:8091"
    issuer_id: int = 0              # Resolve this issuer's tickets
    buyer: str = ""                 # Refund this buyer's expired tickets
    poll_interval: int = 15         # Seconds
    request_timeout: int = 30       # Seconds

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Config":
        """Build config from INSTANTWIN_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            value = environ.get(ENV_PREFIX + f.name.upper())
            if value is None or value == "":
                continue
            setattr(config, f.name, int(value) if f.type in (int, "int") else value)
        return config


def load_env_file(path: str = ".env"):
    """Load KEY=VALUE lines into os.environ without overriding existing keys."""
    if not os.path.exists(path):
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def mask_secret(secret: str, visible_prefix: int = 6, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"
