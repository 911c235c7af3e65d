"""
Hogflix Logger - structured JSON logging for the identity sync engine.

BASIC USAGE:
    from hogflix.logger import logger
    logger.info("identity_identified", distinct_id="max@hogflix.com")

WITH VISITOR CONTEXT:
    from hogflix.logger import bind_visitor, logger

    bind_visitor("max@hogflix.com", state="identified")
    logger.info("group_write_sent", group_type="user_type")
    # -> {"msg": "group_write_sent", "distinct_id": "max@hogflix.com", ...}
"""

from .context import (
    bind_visitor,
    clear_context,
    get_distinct_id,
    get_extra_context,
    get_identity_state,
    inject_visitor_context,
    set_extra_context,
    visitor_context,
)
from .structured_logger import configure_logging, logger

__all__ = [
    # Main logger
    "logger",
    "configure_logging",
    # Visitor context
    "bind_visitor",
    "clear_context",
    "get_distinct_id",
    "get_identity_state",
    "get_extra_context",
    "set_extra_context",
    "inject_visitor_context",
    "visitor_context",
]
