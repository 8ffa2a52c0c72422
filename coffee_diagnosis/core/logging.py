"""
Logging Utility
Structured logging for the diagnosis core

- One stdout handler configured for the whole process
- Module loggers via logging.getLogger(__name__)
- JSON audit lines for registry, feedback and retraining events
"""

import logging
import sys
import json
from typing import Optional, Dict, Any
from datetime import datetime

from coffee_diagnosis.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    return logging.getLogger(name)


def log_audit(event_type: str, actor_id: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event (e.g. "model_switched")
        actor_id: User or component responsible, "system" when automatic
        details: Additional event details
    """
    logger = get_logger("audit")
    audit_entry = {
        "timestamp": datetime.utcnow().isoformat(),
        "event_type": event_type,
        "actor_id": actor_id or "system",
        "details": details
    }
    logger.info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
