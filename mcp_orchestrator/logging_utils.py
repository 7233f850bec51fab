#!/usr/bin/env python3
"""
Structured logging helpers shared by the lifecycle components
"""

import logging
import time
from typing import Optional

logger = logging.getLogger("mcp_orchestrator.events")


def log_event(service: str, action: str, transport: Optional[str], start_ts: float,
              status: str = "ok", **extra):
    """Centralized single-line structured event logging.
    Always emits: evt, service, action, transport, status, ms plus any extra key=value pairs.
    start_ts must come from time.perf_counter().
    """
    try:
        duration_ms = (time.perf_counter() - start_ts) * 1000.0
        base = {
            "evt": "mcp",
            "service": service,
            "action": action,
            "transport": transport,
            "status": status,
            "ms": f"{duration_ms:.1f}",
        }
        for k, v in extra.items():
            if v is not None:
                base[k] = v
        logger.info(" ".join(f"{k}={v}" for k, v in base.items()))
    except Exception:  # Never let logging raise
        logger.debug("Structured logging failed", exc_info=True)


def mask_token(token: Optional[str], visible: int = 8) -> str:
    if not token:
        return "<none>"
    if len(token) <= visible:
        return "***"
    return f"{token[:visible]}..."


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
